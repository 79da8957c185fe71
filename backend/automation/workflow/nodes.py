"""Node handlers and the dispatch table keyed on node type.

Each handler receives the node, a read-only view of the execution context,
the adapters bundle and the current time, and returns a :class:`NodeResult`.
Handlers never touch the database; persistence belongs to the engine.
"""
from __future__ import annotations

import math
import re
import zlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .adapters import Adapters
from .context import render, render_text, resolve_path
from .definition import Node
from .errors import AdapterError, CRMError, DefinitionError

_UNIT_MINUTES = {
    "m": 1,
    "minute": 1,
    "minutes": 1,
    "h": 60,
    "hour": 60,
    "hours": 60,
    "d": 60 * 24,
    "day": 60 * 24,
    "days": 60 * 24,
    "w": 60 * 24 * 7,
    "week": 60 * 24 * 7,
    "weeks": 60 * 24 * 7,
}
_SHORTHAND = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]*)\s*$", re.IGNORECASE)


@dataclass
class NodeResult:
    output: dict[str, Any] = field(default_factory=dict)
    updates: dict[str, Any] = field(default_factory=dict)
    branch: str | None = None
    resume_at: datetime | None = None
    messages: list[tuple[str, str, dict[str, Any] | None]] = field(default_factory=list)

    def log(self, level: str, message: str, details: dict[str, Any] | None = None) -> None:
        self.messages.append((level, message, details))


NodeHandler = Callable[[Node, dict[str, Any], Adapters, datetime], NodeResult]


def parse_duration(value: Any, unit: str | None = None) -> timedelta:
    """Convert ``5`` + ``"hours"`` or shorthand such as ``"2h"`` into a timedelta.

    Bare numbers are minutes. Seconds round up to one minute.
    """

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        amount = float(value)
        suffix = (unit or "minutes").strip().lower()
    elif isinstance(value, str):
        match = _SHORTHAND.match(value)
        if match is None:
            raise DefinitionError(f"invalid duration {value!r}")
        amount = float(match.group(1))
        suffix = (match.group(2) or unit or "minutes").strip().lower()
    else:
        raise DefinitionError(f"invalid duration {value!r}")

    if amount < 0:
        raise DefinitionError("duration must not be negative")
    if suffix in {"s", "second", "seconds"}:
        return timedelta(minutes=max(1, math.ceil(amount / 60)))
    if suffix not in _UNIT_MINUTES:
        raise DefinitionError(f"unsupported duration unit {suffix!r}")
    return timedelta(minutes=amount * _UNIT_MINUTES[suffix])


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def compare(left: Any, operator: str, right: Any) -> bool:
    """Evaluate a single comparison the way the condition editor describes it."""

    op = (operator or "equals").strip().lower()
    left_number = _as_number(left)
    right_number = _as_number(right)
    left_text = "" if left is None else str(left)
    right_text = "" if right is None else str(right)

    if op in {"==", "equals", "eq"}:
        if left_number is not None and right_number is not None:
            return left_number == right_number
        return left_text == right_text
    if op in {"!=", "not_equals", "neq"}:
        return not compare(left, "equals", right)
    if op in {">", "greater_than", "gt", "<", "less_than", "lt", ">=", "greater_equal", "gte", "<=", "less_equal", "lte"}:
        if left_number is None or right_number is None:
            return False
        if op in {">", "greater_than", "gt"}:
            return left_number > right_number
        if op in {"<", "less_than", "lt"}:
            return left_number < right_number
        if op in {">=", "greater_equal", "gte"}:
            return left_number >= right_number
        return left_number <= right_number
    if op == "contains":
        return right_text.lower() in left_text.lower()
    if op == "not_contains":
        return right_text.lower() not in left_text.lower()
    if op == "starts_with":
        return left_text.lower().startswith(right_text.lower())
    if op == "ends_with":
        return left_text.lower().endswith(right_text.lower())
    if op == "is_empty":
        return left in (None, "", [], {})
    if op == "is_not_empty":
        return left not in (None, "", [], {})
    raise DefinitionError(f"unsupported operator {operator!r}")


def _conditions(config: dict[str, Any]) -> list[dict[str, Any]]:
    conditions = config.get("conditions")
    if isinstance(conditions, list) and conditions:
        return [item for item in conditions if isinstance(item, dict)]
    return [
        {
            "variable": config.get("variable", ""),
            "operator": config.get("operator", "equals"),
            "value": config.get("value", ""),
        }
    ]


def evaluate_conditions(config: dict[str, Any], context: dict[str, Any]) -> tuple[bool, list[dict[str, Any]]]:
    logic = str(config.get("logic", "ALL")).upper()
    evaluated: list[dict[str, Any]] = []
    for condition in _conditions(config):
        variable = str(condition.get("variable", ""))
        actual = resolve_path(context, variable)
        expected = render(condition.get("value"), context)
        result = compare(actual, str(condition.get("operator", "equals")), expected)
        evaluated.append(
            {
                "variable": variable,
                "operator": condition.get("operator", "equals"),
                "value": expected,
                "actual": actual,
                "result": result,
            }
        )
    results = [item["result"] for item in evaluated]
    outcome = any(results) if logic == "ANY" else all(results)
    return outcome, evaluated


def _first_present(context: dict[str, Any], *paths: str) -> Any:
    for path in paths:
        value = resolve_path(context, path)
        if value not in (None, ""):
            return value
    return None


def _lead_id(node: Node, context: dict[str, Any]) -> str:
    explicit = render(node.config.get("lead_id", node.config.get("leadId")), context)
    lead_id = explicit or _first_present(context, "lead_id", "lead.id", "leadId")
    if not lead_id:
        raise CRMError("no lead available in the execution context", kind="missing_lead")
    return str(lead_id)


def _handle_trigger(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    result = NodeResult(output={"triggered": True})
    result.log("info", "workflow triggered", {"trigger_type": context.get("trigger_type")})
    return result


def _handle_action(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    action_type = node.config.get("action_type", node.config.get("actionType", "send_message"))
    if action_type != "send_message":
        raise DefinitionError(f"unsupported action type {action_type!r}")

    content = render_text(node.config.get("message", node.config.get("content")), context)
    channel = render_text(node.config.get("channel"), context) or _first_present(
        context, "channel", "conversation.channel"
    )
    recipient = render_text(node.config.get("recipient"), context) or _first_present(
        context, "sender", "message_sender", "lead.phone", "conversation_id"
    )
    if not channel or not recipient:
        raise DefinitionError("send_message needs a channel and a recipient")

    message_id = adapters.messages.send(str(channel), str(recipient), content)
    result = NodeResult(
        output={"message_id": message_id, "channel": channel, "recipient": recipient, "content": content},
        updates={"last_message_id": message_id},
    )
    result.log("info", f"message sent via {channel}", {"message_id": message_id})
    return result


def _handle_crm(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    action = node.config.get("action", node.config.get("actionType"))
    if action == "create_lead":
        fields = node.config.get("fields")
        if not isinstance(fields, dict):
            fields = {
                "name": node.config.get("leadName", ""),
                "email": node.config.get("leadEmail", ""),
                "phone": node.config.get("leadPhone", ""),
            }
        rendered = render(fields, context)
        lead = adapters.crm.create_lead(rendered)
        lead_id = lead.get("id")
        result = NodeResult(output={"action": action, "lead": lead}, updates={"lead": lead, "lead_id": lead_id})
        result.log("info", "lead created", {"lead_id": lead_id})
        return result

    if action == "update_stage":
        lead_id = _lead_id(node, context)
        stage = render_text(node.config.get("stage"), context)
        if not stage:
            raise DefinitionError("update_stage needs a stage")
        adapters.crm.update_stage(lead_id, stage)
        result = NodeResult(
            output={"action": action, "lead_id": lead_id, "stage": stage},
            updates={"lead": {"id": lead_id, "stage": stage}},
        )
        result.log("info", f"lead {lead_id} moved to stage {stage}")
        return result

    if action == "add_tag":
        lead_id = _lead_id(node, context)
        tag = render_text(node.config.get("tag"), context)
        if not tag:
            raise DefinitionError("add_tag needs a tag")
        adapters.crm.add_tag(lead_id, tag)
        tags = list(resolve_path(context, "lead.tags", []) or [])
        if tag not in tags:
            tags.append(tag)
        result = NodeResult(
            output={"action": action, "lead_id": lead_id, "tag": tag},
            updates={"lead": {"id": lead_id, "tags": tags}},
        )
        result.log("info", f"tag {tag} added to lead {lead_id}")
        return result

    raise DefinitionError(f"unsupported crm action {action!r}")


def _handle_http(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    method = str(node.config.get("method") or "GET").upper()
    url = render_text(node.config.get("url"), context)
    if not url:
        raise DefinitionError("http node needs a url")
    headers = render(node.config.get("headers") or {}, context)
    if not isinstance(headers, dict):
        raise DefinitionError("http headers must be an object")
    body = render(node.config.get("body"), context)

    response = adapters.http.call(method, url, {str(k): str(v) for k, v in headers.items()}, body)
    if not response.ok:
        raise AdapterError(
            f"{method} {url} returned status {response.status}",
            kind="http_status",
            details=response.to_dict(),
        )

    result = NodeResult(
        output={"method": method, "url": url, "response": response.to_dict()},
        updates={"http_response": response.to_dict()},
    )
    result.log("info", f"{method} {url} -> {response.status}")
    return result


def _handle_email(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    to = render_text(node.config.get("to"), context) or _first_present(context, "lead.email", "email")
    if not to:
        raise DefinitionError("email node needs a recipient")
    subject = render_text(node.config.get("subject"), context)
    html = render_text(node.config.get("html", node.config.get("body")), context)
    adapters.email.send(str(to), subject, html)
    result = NodeResult(output={"to": to, "subject": subject})
    result.log("info", f"email sent to {to}")
    return result


def _handle_sms(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    to = render_text(node.config.get("to"), context) or _first_present(context, "lead.phone", "sender")
    if not to:
        raise DefinitionError("sms node needs a recipient")
    body = render_text(node.config.get("body", node.config.get("message")), context)
    adapters.sms.send(str(to), body)
    result = NodeResult(output={"to": to, "body": body})
    result.log("info", f"sms sent to {to}")
    return result


def _handle_wait(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    delay = parse_duration(node.config.get("duration", 1), node.config.get("unit"))
    resume_at = now + delay
    result = NodeResult(output={"resume_at": resume_at.isoformat() + "Z"}, resume_at=resume_at)
    result.log("info", f"waiting until {resume_at.isoformat()}Z")
    return result


def _handle_condition(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    outcome, evaluated = evaluate_conditions(node.config, context)
    branch = "true" if outcome else "false"
    result = NodeResult(output={"result": outcome, "conditions": evaluated}, branch=branch)
    result.log("info", f"condition evaluated to {branch}", {"conditions": evaluated})
    return result


def _handle_stage(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    cases = node.config.get("cases")
    branch: str | None = None
    if isinstance(cases, list) and cases:
        for case in cases:
            if not isinstance(case, dict) or "label" not in case:
                raise DefinitionError(f"stage node {node.id} has a case without a label")
            matched, _ = evaluate_conditions(case, context)
            if matched:
                branch = str(case["label"])
                break
        if branch is None:
            branch = str(node.config.get("default", "default"))
    else:
        value = resolve_path(context, str(node.config.get("variable", "lead.stage")))
        branch = str(value) if value not in (None, "") else str(node.config.get("default", "default"))

    result = NodeResult(output={"branch": branch}, branch=branch)
    result.log("info", f"stage branch {branch} selected")
    return result


def _handle_split(node: Node, context: dict[str, Any], adapters: Adapters, now: datetime) -> NodeResult:
    paths = node.config.get("paths") or [
        {"label": "a", "percentage": 50},
        {"label": "b", "percentage": 50},
    ]
    identifier = _first_present(context, "lead.id", "lead_id", "conversation_id") or "anonymous"
    bucket = zlib.crc32(f"{identifier}{node.id}".encode("utf-8")) % 100

    selected: str | None = None
    cumulative = 0.0
    for path in paths:
        cumulative += float(path.get("percentage", 0))
        if bucket < cumulative:
            selected = str(path.get("label"))
            break
    if selected is None:
        selected = str(paths[-1].get("label"))

    result = NodeResult(output={"bucket": bucket, "branch": selected}, branch=selected)
    result.log("info", f"split bucket {bucket} -> {selected}")
    return result


NODE_HANDLERS: dict[str, NodeHandler] = {
    "trigger": _handle_trigger,
    "action": _handle_action,
    "crm": _handle_crm,
    "http": _handle_http,
    "email": _handle_email,
    "sms": _handle_sms,
    "wait": _handle_wait,
    "condition": _handle_condition,
    "stage": _handle_stage,
    "split": _handle_split,
}
