"""Dry-run executor for authoring workflows without side effects.

The executor walks a definition with the same :func:`~.walker.advance`
traversal and limits as the persistent engine, but keeps all state in memory
and swaps the adapters for recorders that describe what would have happened.
"""
from __future__ import annotations

import itertools
import time
from collections.abc import Callable
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..utils.clock import isoformat, utcnow
from .adapters import Adapters, HTTPResponse
from .context import merge
from .definition import Node, WorkflowGraph, parse_graph
from .errors import DefinitionError
from .replies import accepts_reply, conversation_for, reply_config, reply_context_updates
from .walker import (
    Complete,
    Continue,
    ExecutionOutcome,
    Fail,
    Limits,
    LogRecord,
    Suspend,
    advance,
    resume_target,
)

# Keys of ``test_data`` that configure the simulation rather than seed the context.
_CONTROL_KEYS = ("replies", "http_responses", "lead", "context")


@dataclass
class DryRunConfig:
    workflow_definition: dict[str, Any]
    test_data: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = True
    step_by_step: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DryRunConfig:
        definition = data.get("workflow_definition", data.get("workflowDefinition"))
        if not isinstance(definition, dict):
            raise ValueError("workflow_definition must be an object")
        test_data = data.get("test_data", data.get("testData")) or {}
        if not isinstance(test_data, dict):
            raise ValueError("test_data must be an object")
        return cls(
            workflow_definition=definition,
            test_data=test_data,
            dry_run=bool(data.get("dry_run", data.get("dryRun", True))),
            step_by_step=bool(data.get("step_by_step", data.get("stepByStep", False))),
        )


@dataclass
class DryRunResult:
    final_context: dict[str, Any]
    outcome: str
    error: str | None
    logs: list[LogRecord]
    visited: list[str]
    trace: list[dict[str, Any]]
    calls: list[dict[str, Any]]
    finished: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_context": self.final_context,
            "outcome": self.outcome,
            "error": self.error,
            "logs": [
                {
                    "level": record.level,
                    "message": record.message,
                    "node_id": record.node_id,
                    "details": record.details,
                }
                for record in self.logs
            ],
            "visited": list(self.visited),
            "trace": list(self.trace),
            "calls": list(self.calls),
            "finished": self.finished,
        }


class _CallRecorder:
    """Collects adapter invocations made while simulating a node."""

    def __init__(self) -> None:
        self.node_id: str | None = None
        self.calls: list[dict[str, Any]] = []
        self.logs: list[LogRecord] = []
        self._ids = itertools.count(1)

    def record(self, adapter: str, params: dict[str, Any]) -> None:
        self.calls.append({"node_id": self.node_id, "adapter": adapter, "params": params})
        self.logs.append(
            LogRecord(
                "info",
                f"would have called {adapter} with params {params}",
                self.node_id,
                {"adapter": adapter, "params": params},
            )
        )

    def synthetic_id(self, prefix: str) -> str:
        return f"dry-{prefix}-{next(self._ids)}"


class _RecordingMessageSender:
    def __init__(self, recorder: _CallRecorder) -> None:
        self.recorder = recorder

    def send(self, channel: str, recipient: str, content: str) -> str:
        self.recorder.record(
            "messages.send", {"channel": channel, "recipient": recipient, "content": content}
        )
        return self.recorder.synthetic_id("msg")


class _RecordingCRM:
    def __init__(self, recorder: _CallRecorder, lead: dict[str, Any] | None) -> None:
        self.recorder = recorder
        self.lead = lead or {}

    def create_lead(self, fields: dict[str, Any]) -> dict[str, Any]:
        self.recorder.record("crm.create_lead", {"fields": fields})
        return {**self.lead, **fields, "id": self.lead.get("id") or self.recorder.synthetic_id("lead")}

    def update_stage(self, lead_id: str, stage: str) -> None:
        self.recorder.record("crm.update_stage", {"lead_id": lead_id, "stage": stage})

    def add_tag(self, lead_id: str, tag: str) -> None:
        self.recorder.record("crm.add_tag", {"lead_id": lead_id, "tag": tag})


class _RecordingHTTPCaller:
    """Returns ``test_data["http_responses"][node_id]`` or an empty 200."""

    def __init__(self, recorder: _CallRecorder, responses: dict[str, Any]) -> None:
        self.recorder = recorder
        self.responses = responses

    def call(self, method: str, url: str, headers: dict[str, str], body: Any) -> HTTPResponse:
        self.recorder.record(
            "http.call", {"method": method, "url": url, "headers": headers, "body": body}
        )
        mocked = self.responses.get(self.recorder.node_id or "")
        if isinstance(mocked, dict):
            return HTTPResponse(status=int(mocked.get("status", 200)), body=mocked.get("body"))
        return HTTPResponse(status=200, body={})


class _RecordingEmailSender:
    def __init__(self, recorder: _CallRecorder) -> None:
        self.recorder = recorder

    def send(self, to: str, subject: str, html: str) -> None:
        self.recorder.record("email.send", {"to": to, "subject": subject, "html": html})


class _RecordingSMSSender:
    def __init__(self, recorder: _CallRecorder) -> None:
        self.recorder = recorder

    def send(self, to: str, body: str) -> None:
        self.recorder.record("sms.send", {"to": to, "body": body})


def recording_adapters(recorder: _CallRecorder, test_data: dict[str, Any]) -> Adapters:
    responses = test_data.get("http_responses")
    lead = test_data.get("lead")
    return Adapters(
        messages=_RecordingMessageSender(recorder),
        crm=_RecordingCRM(recorder, lead if isinstance(lead, dict) else None),
        http=_RecordingHTTPCaller(recorder, responses if isinstance(responses, dict) else {}),
        email=_RecordingEmailSender(recorder),
        sms=_RecordingSMSSender(recorder),
    )


class DryRunExecutor:
    """Simulates a workflow definition in memory.

    ``execute()`` runs to completion, or advances a single node when
    ``step_by_step`` is set; calling it again continues from where it
    stopped. ``reset()`` restarts the simulation from the entry node.
    """

    def __init__(
        self,
        config: DryRunConfig,
        adapters: Adapters | None = None,
        limits: Limits | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.limits = limits or Limits()
        self.clock = clock
        self._live_adapters = adapters
        self.reset()

    def reset(self) -> None:
        test_data = self.config.test_data
        self.recorder = _CallRecorder()
        if self.config.dry_run or self._live_adapters is None:
            self.adapters = recording_adapters(self.recorder, test_data)
        else:
            self.adapters = self._live_adapters

        self.context = self._initial_context(test_data)
        self.logs: list[LogRecord] = []
        self.visited: list[str] = []
        self.trace: list[dict[str, Any]] = []
        self.step_count = 0
        self.now = self.clock()
        self.outcome: ExecutionOutcome | None = None
        self.status = "running"
        self.error: str | None = None

        self.graph: WorkflowGraph | None = None
        self.current_node_id: str | None = None
        try:
            self.graph = parse_graph(self.config.workflow_definition)
            self.current_node_id = self.graph.entry_node().id
        except DefinitionError as exc:
            self._finish(Fail(str(exc), kind=exc.kind), None)

    @property
    def finished(self) -> bool:
        return self.status != "running"

    def execute(self) -> DryRunResult:
        run_started = time.monotonic()
        while not self.finished:
            self._step(run_started)
            if self.config.step_by_step:
                break
        return self.result()

    def result(self) -> DryRunResult:
        return DryRunResult(
            final_context=deepcopy(self.context),
            outcome=self.status,
            error=self.error,
            logs=list(self.logs),
            visited=list(self.visited),
            trace=list(self.trace),
            calls=list(self.recorder.calls),
            finished=self.finished,
        )

    @staticmethod
    def _initial_context(test_data: dict[str, Any]) -> dict[str, Any]:
        seeded = test_data.get("context")
        if isinstance(seeded, dict):
            context = deepcopy(seeded)
        else:
            context = {
                key: deepcopy(value) for key, value in test_data.items() if key not in _CONTROL_KEYS
            }
        lead = test_data.get("lead")
        if isinstance(lead, dict):
            context = merge(context, {"lead": lead})
            if lead.get("id") is not None:
                context.setdefault("lead_id", lead["id"])
        return context

    def _step(self, run_started: float) -> None:
        assert self.graph is not None
        node_id = self.current_node_id

        limit_failure = self.limits.check(self.step_count, run_started)
        if limit_failure is not None:
            self.logs.append(
                LogRecord("error", limit_failure.message, node_id, {"type": limit_failure.kind})
            )
            self._finish(limit_failure, node_id)
            return

        self.step_count += 1
        self.recorder.node_id = node_id
        self.recorder.logs = []
        result = advance(self.graph, node_id, self.context, self.adapters, self.now)

        if node_id is not None:
            self.visited.append(node_id)
        self.logs.extend(self.recorder.logs)
        self.logs.extend(result.logs)
        self.context = result.context
        outcome = result.outcome

        if isinstance(outcome, Suspend):
            node = self.graph.node(node_id)
            if outcome.kind == "wait":
                outcome = self._skip_wait(node, outcome)
            else:
                outcome = self._simulate_reply(node)
                if outcome is None:
                    return

        self.trace.append(
            {
                "step": self.step_count,
                "node_id": node_id,
                "outcome": type(outcome).__name__.lower(),
                "next_node_id": outcome.next_node_id if isinstance(outcome, Continue) else None,
            }
        )
        if isinstance(outcome, Continue):
            self.current_node_id = outcome.next_node_id
        else:
            self._finish(outcome, node_id)

    def _skip_wait(self, node: Node | None, outcome: Suspend) -> ExecutionOutcome:
        resume_at = outcome.resume_at or self.now
        self.logs.append(
            LogRecord(
                "info",
                f"would resume at {isoformat(resume_at)}; continuing without waiting",
                node.id if node else None,
            )
        )
        self.now = max(self.now, resume_at)
        return self._leave(node.id if node else None)

    def _simulate_reply(self, node: Node | None) -> ExecutionOutcome | None:
        assert node is not None
        if not conversation_for(node, self.context):
            reason = f"node {node.id} waits for a reply but no conversation is known"
            self.logs.append(LogRecord("error", reason, node.id, {"type": "no_conversation"}))
            return Fail(reason, kind="no_conversation")

        replies = self.config.test_data.get("replies") or {}
        reply = replies.get(node.id) if isinstance(replies, dict) else None
        if reply is None:
            self.logs.append(LogRecord("warn", "no simulated reply provided; stopping", node.id))
            self._halt("waiting_input", node.id)
            return None
        if not isinstance(reply, dict):
            reply = {"text": str(reply)}

        config = reply_config(node)
        try:
            accepted, reason = accepts_reply(config, reply)
        except DefinitionError as exc:
            self.logs.append(LogRecord("error", str(exc), node.id, {"type": exc.kind}))
            return Fail(str(exc), kind=exc.kind)
        if not accepted:
            self.logs.append(LogRecord("warn", f"reply rejected: {reason}", node.id, {"reply": reply}))
            self._halt("waiting_input", node.id)
            return None

        self.context = merge(self.context, reply_context_updates(config, reply))
        self.logs.append(LogRecord("info", "reply received", node.id))
        return self._leave(node.id)

    def _leave(self, node_id: str | None) -> ExecutionOutcome:
        outcome = resume_target(self.graph, node_id)
        if isinstance(outcome, Fail):
            self.logs.append(LogRecord("error", outcome.message, node_id, {"type": outcome.kind}))
        return outcome

    def _halt(self, status: str, node_id: str | None) -> None:
        self.trace.append(
            {"step": self.step_count, "node_id": node_id, "outcome": status, "next_node_id": None}
        )
        self.status = status

    def _finish(self, outcome: ExecutionOutcome, node_id: str | None) -> None:
        self.outcome = outcome
        self.current_node_id = node_id
        if isinstance(outcome, Complete):
            self.status = "completed"
        elif isinstance(outcome, Fail):
            self.status = "failed"
            self.error = outcome.message
