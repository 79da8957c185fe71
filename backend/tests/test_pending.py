"""Tests for reply waypoints: suspension, resumption, validation and expiry."""
from __future__ import annotations

import pathlib
import sys
from datetime import timedelta

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.automation.extensions import db
from backend.automation.models import Execution, ExecutionLog, PendingInput
from backend.automation.utils.clock import utcnow
from backend.automation.workflow import replies, store
from backend.automation.workflow.engine import ExecutionEngine
from backend.automation.workflow.pending import PendingInputManager
from backend.automation.workflow.replies import reply_context_updates
from backend.automation.workflow.templates import BUDGET_QUALIFICATION
from backend.automation.workflow.triggers import TriggerEvaluator


def _budget_workflow(workflow_factory, name: str = "Budget"):
    return workflow_factory(
        BUDGET_QUALIFICATION.definition(),
        name=name,
        trigger_config=BUDGET_QUALIFICATION.trigger_config,
    )


def _start(event) -> list[Execution]:
    handles = TriggerEvaluator().evaluate(event)
    return [db.session.get(Execution, handle.execution_id) for handle in handles]


def _waiting_rows(conversation_id: str = "conv-1") -> list[PendingInput]:
    return PendingInput.query.filter_by(conversation_id=conversation_id, status="waiting").all()


def test_reply_node_suspends_with_pending_input(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)

    (execution,) = _start(message_event("Quiero un presupuesto"))

    assert execution.status == "waiting_input"
    assert execution.current_node_id == "ask_budget"
    assert [item["content"] for item in fake_adapters.messages.sent] == ["What is your budget in EUR?"]
    (pending,) = _waiting_rows()
    assert pending.execution_id == execution.id
    assert pending.node_id == "ask_budget"
    assert pending.organization_id == "org-1"
    assert pending.config["store_as"] == "budget"
    assert pending.expires_at > utcnow() + timedelta(hours=23)


def test_high_budget_reply_promotes_lead(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)
    (execution,) = _start(message_event("presupuesto"))

    handle = PendingInputManager().on_external_reply("conv-1", {"text": "1500"})

    assert handle is not None
    assert handle.execution_id == execution.id
    assert handle.status == "completed"
    db.session.refresh(execution)
    assert execution.context["budget"] == "1500"
    assert execution.context["reply"] == {"text": "1500"}
    assert execution.context["text"] == "1500"
    assert fake_adapters.crm.calls == [("update_stage", ("lead-42", "qualified"))]
    assert _waiting_rows() == []
    resolved = PendingInput.query.filter_by(execution_id=execution.id).one()
    assert resolved.status == "resolved"
    assert resolved.response == {"text": "1500"}


def test_low_budget_reply_takes_the_default_branch(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)
    _start(message_event("presupuesto"))

    handle = PendingInputManager().on_external_reply("conv-1", "500")

    assert handle.status == "completed"
    assert fake_adapters.crm.calls == [("add_tag", ("lead-42", "nurture"))]


def test_invalid_reply_keeps_waiting(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)
    (execution,) = _start(message_event("presupuesto"))

    assert PendingInputManager().on_external_reply("conv-1", {"text": "lots"}) is None

    db.session.refresh(execution)
    assert execution.status == "waiting_input"
    assert len(_waiting_rows()) == 1
    warning = (
        ExecutionLog.query.filter_by(execution_id=execution.id, level="warn")
        .order_by(ExecutionLog.id.desc())
        .first()
    )
    assert warning.message == "reply rejected: Please answer with a number"

    handle = PendingInputManager().on_external_reply("conv-1", {"text": "2000"})
    assert handle.status == "completed"


def test_reply_without_pending_input_is_a_no_op(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)
    (execution,) = _start(message_event("presupuesto"))

    assert PendingInputManager().on_external_reply("conv-unknown", {"text": "1500"}) is None
    assert PendingInputManager().on_external_reply("", {"text": "1500"}) is None

    db.session.refresh(execution)
    assert execution.status == "waiting_input"
    assert Execution.query.count() == 1
    assert fake_adapters.crm.calls == []


def test_only_one_claim_wins(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)
    _start(message_event("presupuesto"))
    (pending,) = _waiting_rows()
    now = utcnow()

    assert store.claim_pending_input(pending, {"text": "1"}, now) is True
    assert store.claim_pending_input(pending, {"text": "2"}, now) is False

    db.session.refresh(pending)
    assert pending.response == {"text": "1"}


def test_second_execution_on_busy_conversation_fails(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory, name="Budget A")
    _budget_workflow(workflow_factory, name="Budget B")

    first, second = _start(message_event("presupuesto"))

    assert first.status == "waiting_input"
    assert second.status == "failed"
    assert second.error_message.startswith("conversation_busy:")
    assert len(_waiting_rows()) == 1


def test_reply_node_without_conversation_fails(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)

    (execution,) = _start(message_event("presupuesto", conversation_id=None))

    assert execution.status == "failed"
    assert execution.error_message.startswith("no_conversation:")
    assert PendingInput.query.count() == 0


def test_expired_input_fails_execution(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)
    (execution,) = _start(message_event("presupuesto"))
    (pending,) = _waiting_rows()
    manager = PendingInputManager()

    assert manager.expire_pending(now=pending.expires_at - timedelta(minutes=1)) == 0
    assert manager.expire_pending(now=pending.expires_at + timedelta(minutes=1)) == 1

    db.session.refresh(execution)
    db.session.refresh(pending)
    assert pending.status == "expired"
    assert execution.status == "failed"
    assert execution.error_message.startswith("input_timeout:")
    assert manager.on_external_reply("conv-1", {"text": "1500"}) is None


def test_node_timeout_overrides_default_ttl(workflow_factory, message_event, fake_adapters):
    graph = BUDGET_QUALIFICATION.definition()
    graph["nodes"][1]["config"]["timeout"] = "30m"
    workflow_factory(graph, trigger_config=BUDGET_QUALIFICATION.trigger_config)
    before = utcnow()

    _start(message_event("presupuesto"))

    (pending,) = _waiting_rows()
    assert before + timedelta(minutes=29) < pending.expires_at <= utcnow() + timedelta(minutes=30)


def test_cancel_expires_open_pending_input(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)
    (execution,) = _start(message_event("presupuesto"))

    assert ExecutionEngine.from_app().cancel(execution) is True

    assert _waiting_rows() == []
    assert PendingInputManager().on_external_reply("conv-1", {"text": "1500"}) is None
    db.session.refresh(execution)
    assert execution.status == "cancelled"
    assert execution.current_node_id == "ask_budget"


def test_structured_reply_uses_the_stored_key(workflow_factory, message_event, fake_adapters):
    _budget_workflow(workflow_factory)
    (execution,) = _start(message_event("presupuesto"))

    handle = PendingInputManager().on_external_reply("conv-1", {"budget": 1500})

    assert handle.status == "completed"
    db.session.refresh(execution)
    assert execution.context["budget"] == 1500
    assert execution.context["reply"] == {"budget": 1500}
    assert fake_adapters.crm.calls == [("update_stage", ("lead-42", "qualified"))]


def test_reply_context_updates_never_wrap_a_sent_key():
    config = {"store_as": "budget"}

    assert reply_context_updates(config, {"budget": 1500, "text": "lots"})["budget"] == 1500
    assert reply_context_updates(config, {"text": "900"})["budget"] == "900"
    assert reply_context_updates({"storeAs": "choice"}, {"id": "b1"})["choice"] == {"id": "b1"}


def test_unusable_validation_rule_fails_the_execution(workflow_factory, message_event, fake_adapters):
    graph = BUDGET_QUALIFICATION.definition()
    graph["nodes"][1]["config"]["validation"] = {"type": "regex", "value": "(x"}
    workflow_factory(graph, trigger_config=BUDGET_QUALIFICATION.trigger_config)
    (execution,) = _start(message_event("presupuesto"))
    assert execution.status == "waiting_input"

    assert PendingInputManager().on_external_reply("conv-1", {"text": "x"}) is None

    db.session.refresh(execution)
    assert execution.status == "failed"
    assert execution.error_message.startswith("invalid_validation:")
    assert _waiting_rows() == []
    assert PendingInput.query.filter_by(execution_id=execution.id).one().status == "expired"
    assert fake_adapters.crm.calls == []


def test_concurrent_suspension_keeps_one_waiting_input(
    workflow_factory, message_event, fake_adapters, monkeypatch
):
    workflow = _budget_workflow(workflow_factory)
    (first,) = _start(message_event("presupuesto"))
    assert first.status == "waiting_input"

    # The second worker's lookup ran before the first row was committed.
    monkeypatch.setattr(replies, "waiting_input_for_conversation", lambda conversation_id: None)
    second = store.create_execution(workflow, message_event("presupuesto").to_context(), "trigger")
    ExecutionEngine.from_app().run(second.id)

    db.session.refresh(second)
    db.session.refresh(first)
    assert second.status == "failed"
    assert second.error_message.startswith("conversation_busy:")
    assert first.status == "waiting_input"
    (pending,) = _waiting_rows()
    assert pending.execution_id == first.id
    assert PendingInput.query.filter_by(execution_id=second.id).count() == 0
