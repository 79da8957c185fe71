"""Tests for event normalisation, trigger matching and execution creation."""
from __future__ import annotations

import pathlib
import sys

import pytest
from sqlalchemy.exc import OperationalError

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.automation.extensions import db
from backend.automation.models import Execution, Workflow
from backend.automation.workflow.templates import PRICE_REPLY
from backend.automation.workflow.triggers import (
    NormalizedEvent,
    TriggerEvaluator,
    keyword_errors,
    keyword_matches,
    matches,
)


def _workflow(trigger_type: str, config: dict[str, object], workflow_id: int = 1) -> Workflow:
    workflow = Workflow(id=workflow_id, organization_id="org-1", name="w", trigger_type=trigger_type)
    workflow.trigger_config = config
    return workflow


def test_event_from_dict_accepts_camel_case():
    event = NormalizedEvent.from_dict(
        {
            "organizationId": "org-9",
            "triggerType": "stage_changed",
            "conversationId": 12,
            "leadId": "lead-1",
            "fromStage": "new",
            "toStage": "won",
            "payload": {"source": "crm"},
        }
    )

    assert event.organization_id == "org-9"
    assert event.trigger_type == "stage_changed"
    assert event.conversation_id == "12"
    assert event.to_stage == "won"
    context = event.to_context()
    assert context["lead"] == {"id": "lead-1", "stage": "won"}
    assert context["trigger"] == {"source": "crm"}


def test_event_requires_organization():
    with pytest.raises(ValueError):
        NormalizedEvent.from_dict({"message": "hola"})


@pytest.mark.parametrize(
    "config, message, expected",
    [
        ({}, "anything", True),
        ({"keywords": ["precio"]}, "Cual es el PRECIO?", True),
        ({"keyword": "precio"}, "hola", False),
        ({"keywords": ["precio"], "match_type": "exact"}, "precio por favor", False),
        ({"keywords": ["precio"], "match_type": "exact"}, " Precio ", True),
        ({"keywords": ["info"], "matchType": "starts_with"}, "Info please", True),
        ({"keywords": [r"\bprecios?\b"], "match_type": "regex"}, "los precios", True),
        ({"keywords": ["precio"]}, None, False),
    ],
)
def test_keyword_matching(config, message, expected):
    assert keyword_matches(config, message) is expected


def test_channel_filter():
    workflow = _workflow("keyword", {"keywords": ["hola"], "channels": ["instagram"]})
    event = NormalizedEvent(organization_id="org-1", trigger_type="message_received", message="hola")

    assert matches(workflow, event) is False
    event.channel = "Instagram"
    assert matches(workflow, event) is True


def test_stage_changed_matching():
    workflow = _workflow("stage_changed", {"to_stage": "won"})
    base = {"organization_id": "org-1", "trigger_type": "stage_changed"}

    assert matches(workflow, NormalizedEvent.from_dict({**base, "to_stage": "won"})) is True
    assert matches(workflow, NormalizedEvent.from_dict({**base, "to_stage": "lost"})) is False
    assert matches(_workflow("stage_changed", {}), NormalizedEvent.from_dict(base)) is True


def test_manual_and_scheduled_matching():
    manual = _workflow("manual", {}, workflow_id=5)
    assert matches(manual, NormalizedEvent("org-1", "manual")) is True
    assert matches(manual, NormalizedEvent("org-1", "manual", workflow_id=5)) is True
    assert matches(manual, NormalizedEvent("org-1", "manual", workflow_id=6)) is False

    nightly = _workflow("scheduled", {"schedule": "nightly"})
    assert matches(nightly, NormalizedEvent("org-1", "scheduled", schedule="nightly")) is True
    assert matches(nightly, NormalizedEvent("org-1", "scheduled", schedule="hourly")) is False


def test_message_event_does_not_fire_stage_workflows():
    workflow = _workflow("stage_changed", {})
    assert matches(workflow, NormalizedEvent("org-1", "message_received", message="hi")) is False


def test_evaluate_only_fires_active_workflows_of_the_organization(
    workflow_factory, message_event, fake_adapters
):
    fired = workflow_factory(PRICE_REPLY.definition(), name="Active", trigger_config={"keywords": ["precio"]})
    workflow_factory(PRICE_REPLY.definition(), name="Inactive", is_active=False)
    workflow_factory(PRICE_REPLY.definition(), name="Other org", organization_id="org-2")
    workflow_factory(PRICE_REPLY.definition(), name="Other keyword", trigger_config={"keywords": ["hola"]})

    handles = TriggerEvaluator().evaluate(message_event("precio?"))

    assert [handle.workflow_id for handle in handles] == [fired.id]
    execution = db.session.get(Execution, handles[0].execution_id)
    assert execution.organization_id == "org-1"
    assert execution.context["message"] == "precio?"
    assert execution.context["conversation_id"] == "conv-1"


def test_evaluate_with_invalid_graph_fails_the_execution(workflow_factory, message_event, fake_adapters):
    workflow_factory({"nodes": [], "edges": []}, trigger_type="message_received")

    (handle,) = TriggerEvaluator().evaluate(message_event("hola"))

    assert handle.status == "failed"
    execution = db.session.get(Execution, handle.execution_id)
    assert execution.error_message.startswith("definition_error:")


def test_evaluate_degrades_on_database_errors(monkeypatch, message_event, fake_adapters):
    def _broken(self, event):
        raise OperationalError("SELECT", {}, Exception("database is gone"))

    monkeypatch.setattr(TriggerEvaluator, "_candidates", _broken)

    assert TriggerEvaluator().evaluate(message_event("precio")) == []


def test_invalid_regex_workflow_does_not_block_other_workflows(workflow_factory, message_event, fake_adapters):
    workflow_factory(
        PRICE_REPLY.definition(),
        name="Broken pattern",
        trigger_config={"keywords": ["(precio"], "match_type": "regex"},
    )
    fired = workflow_factory(PRICE_REPLY.definition(), name="Plain", trigger_config={"keywords": ["precio"]})

    handles = TriggerEvaluator().evaluate(message_event("cual es el precio?"))

    assert [handle.workflow_id for handle in handles] == [fired.id]
    assert handles[0].status == "completed"


def test_keyword_errors_only_checks_regex_keywords():
    assert keyword_errors({"keywords": ["(precio"]}) == []
    assert keyword_errors({"keywords": [r"\bprecio\b"], "match_type": "regex"}) == []
    (error,) = keyword_errors({"keywords": ["ok", "(precio"], "matchType": "regex"})
    assert "(precio" in error
