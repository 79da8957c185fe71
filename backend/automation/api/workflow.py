"""REST API endpoints for authoring and publishing workflow definitions."""

from __future__ import annotations

import json
from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from ..extensions import db
from ..models.execution import Execution
from ..models.workflow import TRIGGER_TYPES, Workflow
from ..utils.clock import isoformat
from ..workflow.definition import validate_graph
from ..workflow.triggers import MATCH_TYPES, keyword_errors

bp = Blueprint("workflows", __name__)

MAX_GRAPH_BYTES = 500_000


def organization_from_request(payload: dict[str, Any] | None = None) -> str | None:
    """Resolve the tenant from the header, the query string or the body."""

    candidate = request.headers.get("X-Organization-Id") or request.args.get("organization_id")
    if not candidate and payload:
        candidate = payload.get("organization_id") or payload.get("organizationId")
    if candidate is None:
        return None
    candidate = str(candidate).strip()
    return candidate or None


def _serialize_workflow(workflow: Workflow, *, include_graph: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": workflow.id,
        "organization_id": workflow.organization_id,
        "name": workflow.name,
        "is_active": workflow.is_active,
        "trigger_type": workflow.trigger_type,
        "trigger_config": workflow.trigger_config,
        "created_at": isoformat(workflow.created_at),
        "updated_at": isoformat(workflow.updated_at),
    }
    if include_graph:
        data["graph"] = workflow.graph
    return data


def _normalize_graph(value: Any, *, allow_default: bool = False) -> tuple[str, list[str]]:
    """Validate and serialise the graph payload, returning errors if present."""

    errors: list[str] = []

    if value is None:
        if allow_default:
            return json.dumps({"nodes": [], "edges": []}), errors
        errors.append("graph is required")
        return "", errors

    if isinstance(value, str):
        if not value.strip():
            errors.append("graph must not be empty")
            return "", errors
        try:
            value = json.loads(value)
        except ValueError:
            errors.append("graph must be valid JSON")
            return "", errors

    if not isinstance(value, dict):
        errors.append("graph must be an object")
        return "", errors

    graph_text = json.dumps(value)
    if len(graph_text.encode("utf-8")) > MAX_GRAPH_BYTES:
        errors.append("graph exceeds the maximum size")

    return graph_text, errors


def _normalize_trigger(trigger_type: Any, config: Any) -> tuple[str, dict[str, Any], list[str]]:
    errors: list[str] = []
    if trigger_type not in TRIGGER_TYPES:
        errors.append(f"trigger_type must be one of {', '.join(TRIGGER_TYPES)}")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        errors.append("trigger_config must be an object")
        return str(trigger_type), {}, errors

    match_type = config.get("match_type", config.get("matchType"))
    if match_type is not None and match_type not in MATCH_TYPES:
        errors.append(f"match_type must be one of {', '.join(MATCH_TYPES)}")
    errors.extend(keyword_errors(config))
    return str(trigger_type), config, errors


def _is_name_unique(organization_id: str, name: str, workflow_id: int | None = None) -> bool:
    """Check whether the workflow name is unique within the organization."""

    query = Workflow.query.filter(
        Workflow.organization_id == organization_id,
        func.lower(Workflow.name) == name.lower(),
    )
    if workflow_id is not None:
        query = query.filter(Workflow.id != workflow_id)
    return not db.session.query(query.exists()).scalar()


def _graph_payload(payload: dict[str, Any]) -> Any:
    if "graph" in payload:
        return payload.get("graph")
    return payload.get("graph_json")


def _publish_errors(workflow: Workflow) -> list[str]:
    return validate_graph(workflow.graph)


@bp.post("/workflows")
def create_workflow() -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    organization_id = organization_from_request(payload)
    if not organization_id:
        return jsonify({"error": "organization_id is required"}), HTTPStatus.BAD_REQUEST

    name = (payload.get("name") or "").strip()
    if not name:
        return jsonify({"error": "name is required"}), HTTPStatus.BAD_REQUEST
    if not _is_name_unique(organization_id, name):
        return jsonify({"error": "a workflow with this name already exists"}), HTTPStatus.CONFLICT

    graph_text, errors = _normalize_graph(_graph_payload(payload), allow_default=True)
    trigger_type, trigger_config, trigger_errors = _normalize_trigger(
        payload.get("trigger_type", "manual"), payload.get("trigger_config")
    )
    errors.extend(trigger_errors)
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST

    workflow = Workflow(
        organization_id=organization_id,
        name=name,
        trigger_type=trigger_type,
        graph_json=graph_text,
        is_active=False,
    )
    workflow.trigger_config = trigger_config

    if payload.get("is_active"):
        publish_errors = _publish_errors(workflow)
        if publish_errors:
            return jsonify({"errors": publish_errors}), HTTPStatus.BAD_REQUEST
        workflow.is_active = True

    db.session.add(workflow)
    db.session.commit()

    return jsonify(_serialize_workflow(workflow)), HTTPStatus.CREATED


@bp.get("/workflows")
def list_workflows() -> tuple[object, int]:
    query = Workflow.query
    organization_id = organization_from_request()
    if organization_id:
        query = query.filter_by(organization_id=organization_id)
    active = request.args.get("active")
    if active is not None:
        query = query.filter_by(is_active=active.lower() in {"1", "true", "yes"})

    workflows = query.order_by(Workflow.created_at.desc(), Workflow.id.desc()).all()
    return (
        jsonify([_serialize_workflow(wf, include_graph=False) for wf in workflows]),
        HTTPStatus.OK,
    )


@bp.get("/workflows/<int:workflow_id>")
def get_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    return jsonify(_serialize_workflow(workflow)), HTTPStatus.OK


@bp.put("/workflows/<int:workflow_id>")
def update_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    payload = request.get_json(silent=True, force=True) or {}

    name = payload.get("name")
    if name is not None:
        name = name.strip()
        if not name:
            return jsonify({"error": "name must not be empty"}), HTTPStatus.BAD_REQUEST
        if not _is_name_unique(workflow.organization_id, name, workflow_id):
            return jsonify({"error": "a workflow with this name already exists"}), HTTPStatus.CONFLICT
        workflow.name = name

    errors: list[str] = []
    if "graph" in payload or "graph_json" in payload:
        graph_text, graph_errors = _normalize_graph(_graph_payload(payload))
        errors.extend(graph_errors)
        if not graph_errors:
            workflow.graph_json = graph_text

    if "trigger_type" in payload or "trigger_config" in payload:
        trigger_type, trigger_config, trigger_errors = _normalize_trigger(
            payload.get("trigger_type", workflow.trigger_type),
            payload.get("trigger_config", workflow.trigger_config),
        )
        errors.extend(trigger_errors)
        if not trigger_errors:
            workflow.trigger_type = trigger_type
            workflow.trigger_config = trigger_config

    if not errors and workflow.is_active:
        errors.extend(_publish_errors(workflow))

    if errors:
        db.session.rollback()
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST

    db.session.commit()
    return jsonify(_serialize_workflow(workflow)), HTTPStatus.OK


@bp.delete("/workflows/<int:workflow_id>")
def delete_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    has_executions = db.session.query(
        Execution.query.filter_by(workflow_id=workflow.id).exists()
    ).scalar()
    if has_executions:
        return (
            jsonify({"error": "workflow has executions; deactivate it instead"}),
            HTTPStatus.CONFLICT,
        )
    db.session.delete(workflow)
    db.session.commit()
    return "", HTTPStatus.NO_CONTENT


@bp.post("/workflows/<int:workflow_id>/activate")
def activate_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    errors = _publish_errors(workflow)
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST
    workflow.is_active = True
    db.session.commit()
    return jsonify(_serialize_workflow(workflow)), HTTPStatus.OK


@bp.post("/workflows/<int:workflow_id>/deactivate")
def deactivate_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    workflow.is_active = False
    db.session.commit()
    return jsonify(_serialize_workflow(workflow)), HTTPStatus.OK


@bp.post("/workflows/validate")
def validate_workflow() -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    graph = _graph_payload(payload)
    _, errors = _normalize_graph(graph)
    if not errors:
        errors = validate_graph(graph if isinstance(graph, dict) else json.loads(graph))
    return jsonify({"valid": not errors, "errors": errors}), HTTPStatus.OK
