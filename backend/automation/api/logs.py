"""API endpoints exposing execution log entries."""

from __future__ import annotations

import json
from http import HTTPStatus

from flask import Blueprint, Response, jsonify, request

from ..models.execution import Execution
from ..models.logs import LOG_LEVELS, ExecutionLog
from ..utils.clock import isoformat

bp = Blueprint("logs", __name__)


def serialize_log(entry: ExecutionLog) -> dict[str, object]:
    return {
        "id": entry.id,
        "execution_id": entry.execution_id,
        "node_id": entry.node_id,
        "level": entry.level,
        "message": entry.message,
        "details": entry.details,
        "createdAt": isoformat(entry.created_at),
    }


def _filtered_query():
    query = ExecutionLog.query

    level = request.args.get("level")
    if level:
        if level not in LOG_LEVELS:
            return None
        query = query.filter(ExecutionLog.level == level)

    execution_id = request.args.get("execution_id", type=int)
    if execution_id is not None:
        query = query.filter(ExecutionLog.execution_id == execution_id)

    organization_id = request.headers.get("X-Organization-Id") or request.args.get("organization_id")
    if organization_id:
        query = query.join(Execution, Execution.id == ExecutionLog.execution_id).filter(
            Execution.organization_id == organization_id
        )
    return query


@bp.get("/logs")
def get_logs() -> tuple[object, int]:
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 200))

    query = _filtered_query()
    if query is None:
        return jsonify({"error": "invalid level"}), HTTPStatus.BAD_REQUEST

    entries = query.order_by(ExecutionLog.id.desc()).limit(limit).all()
    data = [serialize_log(entry) for entry in entries]
    return jsonify(data), HTTPStatus.OK


@bp.get("/logs/download")
def download_logs() -> Response | tuple[object, int]:
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 1000))

    query = _filtered_query()
    if query is None:
        return jsonify({"error": "invalid level"}), HTTPStatus.BAD_REQUEST

    entries = query.order_by(ExecutionLog.id.desc()).limit(limit).all()
    lines = [
        json.dumps(serialize_log(entry))
        for entry in reversed(entries)
    ]
    payload = "\n".join(lines)
    response = Response(payload, mimetype="application/x-ndjson")
    response.headers["Content-Disposition"] = "attachment; filename=execution-logs.ndjson"
    return response
