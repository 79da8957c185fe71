"""Read-only views of executions plus operator cancellation."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request

from ..extensions import db
from ..models.execution import EXECUTION_STATUSES, Execution
from ..models.logs import ExecutionLog
from ..models.pending_input import PendingInput
from ..utils.clock import isoformat
from ..workflow.engine import ExecutionEngine
from .logs import serialize_log
from .workflow import organization_from_request

bp = Blueprint("executions", __name__)


def _serialize_execution(execution: Execution, *, include_context: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": execution.id,
        "workflow_id": execution.workflow_id,
        "organization_id": execution.organization_id,
        "status": execution.status,
        "current_node_id": execution.current_node_id,
        "step_count": execution.step_count,
        "next_run_at": isoformat(execution.next_run_at),
        "started_at": isoformat(execution.started_at),
        "completed_at": isoformat(execution.completed_at),
        "error_message": execution.error_message,
    }
    if include_context:
        data["context"] = execution.context
    return data


def _serialize_pending(pending: PendingInput) -> dict[str, Any]:
    return {
        "id": pending.id,
        "execution_id": pending.execution_id,
        "organization_id": pending.organization_id,
        "conversation_id": pending.conversation_id,
        "node_id": pending.node_id,
        "status": pending.status,
        "input_type": pending.input_type,
        "config": pending.config,
        "response": pending.response,
        "expires_at": isoformat(pending.expires_at),
        "created_at": isoformat(pending.created_at),
        "resolved_at": isoformat(pending.resolved_at),
    }


def _limit(default: int = 100, maximum: int = 500) -> int:
    limit = request.args.get("limit", type=int) or default
    return max(1, min(limit, maximum))


@bp.get("/executions")
def list_executions() -> tuple[object, int]:
    query = Execution.query
    organization_id = organization_from_request()
    if organization_id:
        query = query.filter_by(organization_id=organization_id)

    status = request.args.get("status")
    if status:
        if status not in EXECUTION_STATUSES:
            return jsonify({"error": "invalid status"}), HTTPStatus.BAD_REQUEST
        query = query.filter_by(status=status)

    workflow_id = request.args.get("workflow_id", type=int)
    if workflow_id is not None:
        query = query.filter_by(workflow_id=workflow_id)

    executions = query.order_by(Execution.id.desc()).limit(_limit()).all()
    return jsonify([_serialize_execution(execution) for execution in executions]), HTTPStatus.OK


@bp.get("/executions/<int:execution_id>")
def get_execution(execution_id: int) -> tuple[object, int]:
    execution = Execution.query.get_or_404(execution_id)
    data = _serialize_execution(execution, include_context=True)
    pending = PendingInput.query.filter_by(execution_id=execution.id).order_by(PendingInput.id.asc()).all()
    data["pending_inputs"] = [_serialize_pending(row) for row in pending]
    return jsonify(data), HTTPStatus.OK


@bp.get("/executions/<int:execution_id>/logs")
def get_execution_logs(execution_id: int) -> tuple[object, int]:
    execution = Execution.query.get_or_404(execution_id)
    entries = (
        ExecutionLog.query.filter_by(execution_id=execution.id)
        .order_by(ExecutionLog.id.asc())
        .all()
    )
    return jsonify([serialize_log(entry) for entry in entries]), HTTPStatus.OK


@bp.post("/executions/<int:execution_id>/cancel")
def cancel_execution(execution_id: int) -> tuple[object, int]:
    execution = Execution.query.get_or_404(execution_id)
    payload = request.get_json(silent=True, force=True) or {}
    reason = payload.get("reason") or "cancelled by operator"

    if not ExecutionEngine.from_app().cancel(execution, str(reason)):
        db.session.refresh(execution)
        return (
            jsonify({"error": f"execution is already {execution.status}"}),
            HTTPStatus.CONFLICT,
        )
    return jsonify(_serialize_execution(execution)), HTTPStatus.OK


@bp.get("/pending-inputs")
def list_pending_inputs() -> tuple[object, int]:
    query = PendingInput.query
    organization_id = organization_from_request()
    if organization_id:
        query = query.filter_by(organization_id=organization_id)
    status = request.args.get("status", "waiting")
    if status != "all":
        query = query.filter_by(status=status)
    conversation_id = request.args.get("conversation_id")
    if conversation_id:
        query = query.filter_by(conversation_id=conversation_id)

    rows = query.order_by(PendingInput.created_at.desc(), PendingInput.id.desc()).limit(_limit()).all()
    return jsonify([_serialize_pending(row) for row in rows]), HTTPStatus.OK
