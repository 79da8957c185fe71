"""Reply waypoints: opening pending inputs and interpreting the human reply."""
from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any

from ..models.execution import Execution
from ..models.pending_input import WAITING, PendingInput
from .context import render_text, resolve_path
from .definition import Node, validation_errors
from .errors import DefinitionError, ExecutionStateError
from .nodes import parse_duration
from .store import waiting_input_for_conversation

CONVERSATION_BUSY = "conversation_busy"
INVALID_VALIDATION = "invalid_validation"

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE = re.compile(r"^[\d\s+()-]{10,}$")


def conversation_for(node: Node, context: dict[str, Any]) -> str | None:
    explicit = render_text(
        node.config.get("conversation_id", node.config.get("conversationId")), context
    )
    if explicit:
        return explicit
    for path in ("conversation_id", "conversation.id", "conversationId"):
        value = resolve_path(context, path)
        if value not in (None, ""):
            return str(value)
    return None


def open_pending_input(
    execution: Execution,
    node: Node,
    context: dict[str, Any],
    now: datetime,
    default_ttl: timedelta,
) -> PendingInput:
    """Build the waiting row for ``execution`` parked at ``node``.

    The row is returned unsaved so that the caller commits it together with
    the execution's status change.
    """

    conversation_id = conversation_for(node, context)
    if not conversation_id:
        raise DefinitionError(
            f"node {node.id} waits for a reply but no conversation is known",
            kind="no_conversation",
        )

    existing = waiting_input_for_conversation(conversation_id)
    if existing is not None:
        raise ExecutionStateError(
            f"conversation {conversation_id} is already awaiting input for execution "
            f"{existing.execution_id}"
        )

    timeout = node.config.get("timeout")
    ttl = parse_duration(timeout) if timeout else default_ttl
    pending = PendingInput(
        execution_id=execution.id,
        organization_id=execution.organization_id,
        conversation_id=conversation_id,
        waiting_conversation_id=conversation_id,
        node_id=node.id,
        status=WAITING,
        input_type=str(node.config.get("input_type", node.config.get("inputType", "any"))),
        expires_at=now + ttl,
        created_at=now,
    )
    pending.config = reply_config(node)
    return pending


def reply_config(node: Node) -> dict[str, Any]:
    """The subset of node settings that governs how a reply is accepted."""

    return {
        key: node.config[key]
        for key in ("validation", "store_as", "storeAs", "input_type", "inputType")
        if key in node.config
    }


def reply_text(payload: dict[str, Any]) -> str:
    for key in ("text", "message", "content", "body"):
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return ""


def _store_key(config: dict[str, Any]) -> str | None:
    store_as = config.get("store_as", config.get("storeAs"))
    return store_as if isinstance(store_as, str) and store_as else None


def reply_value(config: dict[str, Any], payload: dict[str, Any]) -> Any:
    """The value a reply contributes: ``payload[store_as]`` when sent, else its text."""

    store_as = _store_key(config)
    if store_as is not None and store_as in payload:
        return payload[store_as]
    return reply_text(payload)


def accepts_reply(config: dict[str, Any], payload: dict[str, Any]) -> tuple[bool, str | None]:
    """Check a reply against the node's expected input type and validation rules.

    Raises :class:`DefinitionError` when the validation rule itself is unusable.
    """

    input_type = str(config.get("input_type", config.get("inputType", "any")))
    reply_type = payload.get("type")
    if input_type != "any" and reply_type is not None and reply_type != input_type:
        return False, f"expected {input_type} reply, got {reply_type}"

    validation = config.get("validation")
    if validation is None:
        return True, None
    problems = validation_errors(validation)
    if problems:
        raise DefinitionError("; ".join(problems), kind=INVALID_VALIDATION)

    value = reply_value(config, payload)
    text = "" if value is None else str(value)
    rule = validation.get("type")
    if rule == "regex":
        valid = re.search(str(validation.get("value") or ""), text) is not None
    elif rule == "contains":
        valid = str(validation.get("value") or "").lower() in text.lower()
    elif rule == "number":
        try:
            float(text)
            valid = True
        except ValueError:
            valid = False
    elif rule == "email":
        valid = _EMAIL.match(text) is not None
    elif rule == "phone":
        valid = _PHONE.match(text) is not None
    else:
        minimum = validation.get("min")
        maximum = validation.get("max")
        valid = (minimum is None or len(text) >= int(minimum)) and (
            maximum is None or len(text) <= int(maximum)
        )

    if valid:
        return True, None
    return False, validation.get("errorMessage") or validation.get("error_message") or "invalid reply"


def reply_context_updates(config: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Context changes applied when a reply resumes an execution."""

    updates = dict(payload)
    updates["reply"] = dict(payload)
    store_as = _store_key(config)
    if store_as is not None and store_as not in payload:
        updates[store_as] = reply_text(payload) or dict(payload)
    return updates
