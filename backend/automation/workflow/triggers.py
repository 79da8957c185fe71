"""Trigger evaluation: turn inbound events into new executions."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.workflow import Workflow
from . import store
from .definition import parse_graph, pattern_error
from .dispatcher import ExecutionDispatcher, get_dispatcher
from .errors import DefinitionError

MATCH_TYPES = ("contains", "exact", "starts_with", "regex")


@dataclass(frozen=True)
class ExecutionHandle:
    execution_id: int
    workflow_id: int
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status,
        }


def _pick(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> str | None:
    return None if value is None else str(value)


@dataclass
class NormalizedEvent:
    organization_id: str
    trigger_type: str
    conversation_id: str | None = None
    lead_id: str | None = None
    channel: str | None = None
    message: str | None = None
    sender: str | None = None
    from_stage: str | None = None
    to_stage: str | None = None
    workflow_id: int | None = None
    schedule: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NormalizedEvent:
        organization_id = _pick(data, "organization_id", "organizationId")
        if not organization_id:
            raise ValueError("organization_id is required")
        trigger_type = _pick(data, "trigger_type", "triggerType", "type") or "message_received"
        workflow_id = _pick(data, "workflow_id", "workflowId")
        payload = data.get("payload")
        return cls(
            organization_id=str(organization_id),
            trigger_type=str(trigger_type),
            conversation_id=_text(_pick(data, "conversation_id", "conversationId")),
            lead_id=_text(_pick(data, "lead_id", "leadId")),
            channel=_text(_pick(data, "channel")),
            message=_text(_pick(data, "message", "text")),
            sender=_text(_pick(data, "sender", "from")),
            from_stage=_text(_pick(data, "from_stage", "fromStage")),
            to_stage=_text(_pick(data, "to_stage", "toStage")),
            workflow_id=int(workflow_id) if workflow_id is not None else None,
            schedule=_text(_pick(data, "schedule")),
            payload=payload if isinstance(payload, dict) else {},
        )

    def to_context(self) -> dict[str, Any]:
        """Initial execution context seeded from the event."""

        context: dict[str, Any] = {
            "organization_id": self.organization_id,
            "trigger_type": self.trigger_type,
            "trigger": dict(self.payload),
        }
        for key in ("conversation_id", "channel", "message", "sender", "from_stage", "to_stage"):
            value = getattr(self, key)
            if value is not None:
                context[key] = value
        if self.lead_id is not None:
            context["lead_id"] = self.lead_id
            context["lead"] = {"id": self.lead_id}
            if self.to_stage is not None:
                context["lead"]["stage"] = self.to_stage
        return context


def _keywords(config: dict[str, Any]) -> list[str]:
    keywords = config.get("keywords")
    if keywords is None:
        keywords = config.get("keyword")
    if isinstance(keywords, str):
        keywords = [keywords]
    return [str(keyword) for keyword in keywords or [] if str(keyword).strip()]


def keyword_errors(config: dict[str, Any]) -> list[str]:
    """Keyword patterns that cannot be compiled under a ``regex`` match type."""

    if config.get("match_type", config.get("matchType")) != "regex":
        return []
    errors = []
    for keyword in _keywords(config):
        error = pattern_error(keyword)
        if error:
            errors.append(error)
    return errors


def keyword_matches(config: dict[str, Any], message: str | None) -> bool:
    keywords = _keywords(config)
    if not keywords:
        return True
    if message is None:
        return False

    match_type = config.get("match_type", config.get("matchType", "contains"))
    text = message.strip().lower()
    for keyword in keywords:
        needle = keyword.strip().lower()
        if match_type == "exact" and text == needle:
            return True
        if match_type == "starts_with" and text.startswith(needle):
            return True
        if match_type == "regex" and re.search(keyword, message, re.IGNORECASE):
            return True
        if match_type == "contains" and needle in text:
            return True
    return False


def _channel_matches(config: dict[str, Any], channel: str | None) -> bool:
    channels = config.get("channels")
    if not channels:
        return True
    if isinstance(channels, str):
        channels = [channels]
    return channel is not None and channel.lower() in {str(c).lower() for c in channels}


def matches(workflow: Workflow, event: NormalizedEvent) -> bool:
    config = workflow.trigger_config
    trigger_type = workflow.trigger_type

    if trigger_type in ("message_received", "keyword"):
        if event.trigger_type not in ("message_received", "keyword"):
            return False
        return _channel_matches(config, event.channel) and keyword_matches(config, event.message)

    if event.trigger_type != trigger_type:
        return False

    if trigger_type == "stage_changed":
        from_stage = config.get("from_stage", config.get("fromStage"))
        to_stage = config.get("to_stage", config.get("toStage"))
        if from_stage and str(from_stage) != event.from_stage:
            return False
        if to_stage and str(to_stage) != event.to_stage:
            return False
        return True

    if trigger_type == "manual":
        return event.workflow_id is None or event.workflow_id == workflow.id

    if trigger_type == "scheduled":
        schedule = config.get("schedule")
        return not schedule or str(schedule) == event.schedule

    return False


class TriggerEvaluator:
    """Fire every active workflow whose trigger matches an event."""

    def __init__(self, dispatcher: ExecutionDispatcher | None = None) -> None:
        self.dispatcher = dispatcher or get_dispatcher()

    def evaluate(self, event: NormalizedEvent) -> list[ExecutionHandle]:
        try:
            candidates = self._candidates(event)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to load workflows for organization %s", event.organization_id
            )
            return []

        handles: list[ExecutionHandle] = []
        for workflow in candidates:
            try:
                matched = matches(workflow, event)
            except re.error as exc:
                current_app.logger.warning(
                    "workflow %s has an invalid keyword pattern, skipping: %s", workflow.id, exc
                )
                continue
            if not matched:
                continue
            try:
                execution = store.create_execution(workflow, event.to_context(), self._entry(workflow))
            except SQLAlchemyError:
                db.session.rollback()
                current_app.logger.exception("Failed to start workflow %s", workflow.id)
                continue

            current_app.logger.info(
                "workflow %s fired by %s event (execution %s)",
                workflow.id,
                event.trigger_type,
                execution.id,
            )
            self.dispatcher.submit(execution.id)
            db.session.refresh(execution)
            handles.append(ExecutionHandle(execution.id, workflow.id, execution.status))
        return handles

    def _candidates(self, event: NormalizedEvent) -> list[Workflow]:
        trigger_types = [event.trigger_type]
        if event.trigger_type in ("message_received", "keyword"):
            trigger_types = ["message_received", "keyword"]
        return (
            Workflow.query.filter_by(organization_id=event.organization_id, is_active=True)
            .filter(Workflow.trigger_type.in_(trigger_types))
            .order_by(Workflow.id.asc())
            .all()
        )

    @staticmethod
    def _entry(workflow: Workflow) -> str | None:
        try:
            return parse_graph(workflow.graph).entry_node().id
        except DefinitionError:
            return None
