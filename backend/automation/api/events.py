"""Ingestion endpoints for platform events and inbound replies."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, jsonify, request

from ..extensions import limiter
from ..workflow.pending import PendingInputManager
from ..workflow.triggers import NormalizedEvent, TriggerEvaluator
from .workflow import organization_from_request

bp = Blueprint("events", __name__)


@bp.post("/events")
def ingest_event() -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "payload must be an object"}), HTTPStatus.BAD_REQUEST

    organization_id = organization_from_request(payload)
    if organization_id:
        payload = {**payload, "organization_id": organization_id}
    try:
        event = NormalizedEvent.from_dict(payload)
    except (TypeError, ValueError) as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST

    handles = TriggerEvaluator().evaluate(event)
    return (
        jsonify(
            {
                "execution_ids": [handle.execution_id for handle in handles],
                "executions": [handle.to_dict() for handle in handles],
            }
        ),
        HTTPStatus.ACCEPTED,
    )


@bp.post("/events/test")
@limiter.limit("10 per minute")
def test_trigger() -> tuple[object, int]:
    """Simulate an inbound message so authors can check their keyword triggers."""

    payload = request.get_json(silent=True, force=True) or {}
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        return jsonify({"error": "message is required"}), HTTPStatus.BAD_REQUEST

    organization_id = organization_from_request(payload)
    if not organization_id:
        return jsonify({"error": "organization_id is required"}), HTTPStatus.BAD_REQUEST

    conversation_id = payload.get("conversationId") or payload.get("conversation_id")
    event = NormalizedEvent.from_dict(
        {
            "organization_id": organization_id,
            "trigger_type": "message_received",
            "message": message,
            "conversation_id": conversation_id or f"test-{organization_id}",
            "channel": payload.get("channel") or "whatsapp",
            "sender": payload.get("sender") or "test-user",
            "lead_id": payload.get("leadId") or payload.get("lead_id"),
            "payload": {"test": True},
        }
    )
    handles = TriggerEvaluator().evaluate(event)
    return (
        jsonify(
            {
                "success": True,
                "triggered": len(handles),
                "execution_ids": [handle.execution_id for handle in handles],
            }
        ),
        HTTPStatus.ACCEPTED,
    )


@bp.post("/replies")
def ingest_reply() -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "payload must be an object"}), HTTPStatus.BAD_REQUEST

    conversation_id = payload.get("conversation_id") or payload.get("conversationId")
    if not conversation_id:
        return jsonify({"error": "conversation_id is required"}), HTTPStatus.BAD_REQUEST

    reply = payload.get("payload")
    if reply is None:
        reply = {
            key: value
            for key, value in payload.items()
            if key not in {"conversation_id", "conversationId"}
        }

    handle = PendingInputManager().on_external_reply(str(conversation_id), reply)
    if handle is None:
        return jsonify({"resumed": False}), HTTPStatus.OK
    return jsonify({"resumed": True, **handle.to_dict()}), HTTPStatus.OK
