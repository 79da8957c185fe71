"""Dry-run endpoints that simulate a workflow without touching executions."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from ..extensions import limiter
from ..models.workflow import Workflow
from ..workflow.adapters import get_adapters
from ..workflow.dry_run import DryRunConfig, DryRunExecutor
from ..workflow.walker import Limits

bp = Blueprint("dry_run", __name__)


def _run(config: DryRunConfig) -> tuple[object, int]:
    executor = DryRunExecutor(
        config,
        adapters=None if config.dry_run else get_adapters(),
        limits=Limits(
            max_steps=int(current_app.config.get("ENGINE_MAX_STEPS", 100)),
            max_run_seconds=float(current_app.config.get("ENGINE_MAX_RUN_SECONDS", 300)),
        ),
    )
    result = executor.execute()
    return jsonify(result.to_dict()), HTTPStatus.OK


@bp.post("/dry-run")
@limiter.limit("10 per minute")
def dry_run_definition() -> tuple[object, int]:
    payload = request.get_json(force=True, silent=True) or {}
    if not isinstance(payload, dict):
        return jsonify({"error": "payload must be an object"}), HTTPStatus.BAD_REQUEST
    try:
        config = DryRunConfig.from_dict(payload)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST
    return _run(config)


@bp.post("/workflows/<int:workflow_id>/dry-run")
@limiter.limit("10 per minute")
def dry_run_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    payload = request.get_json(force=True, silent=True) or {}
    if not isinstance(payload, dict):
        return jsonify({"error": "payload must be an object"}), HTTPStatus.BAD_REQUEST

    try:
        config = DryRunConfig.from_dict({**payload, "workflow_definition": workflow.graph})
    except ValueError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST
    return _run(config)
