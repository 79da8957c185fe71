"""Persistent execution engine.

The engine advances one node per :meth:`ExecutionEngine.step` call, writing
the step's log entries before it commits the execution's new state. The
traversal itself lives in :mod:`.walker` and is shared with the dry run.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from flask import Flask, current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.execution import (
    CANCELLED,
    COMPLETED,
    FAILED,
    RUNNING,
    WAITING,
    WAITING_INPUT,
    Execution,
)
from ..models.pending_input import EXPIRED, WAITING as PENDING_WAITING, PendingInput
from ..utils.clock import utcnow
from ..utils.jsonfield import dump_json
from . import store
from .adapters import Adapters, get_adapters
from .context import merge
from .definition import WorkflowGraph, parse_graph
from .errors import DefinitionError, ExecutionStateError
from .replies import CONVERSATION_BUSY, open_pending_input
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


class ExecutionEngine:
    """Drives persisted executions through their workflow graph."""

    def __init__(
        self,
        adapters: Adapters,
        limits: Limits | None = None,
        pending_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.adapters = adapters
        self.limits = limits or Limits()
        self.pending_ttl = pending_ttl
        self.clock = clock

    @classmethod
    def from_app(cls, app: Flask | None = None) -> ExecutionEngine:
        app = app or current_app._get_current_object()  # type: ignore[attr-defined]
        return cls(
            adapters=get_adapters(app),
            limits=Limits(
                max_steps=int(app.config.get("ENGINE_MAX_STEPS", 100)),
                max_run_seconds=float(app.config.get("ENGINE_MAX_RUN_SECONDS", 300)),
            ),
            pending_ttl=timedelta(minutes=int(app.config.get("PENDING_INPUT_TTL_MINUTES", 1440))),
        )

    def run(self, execution_id: int) -> ExecutionOutcome | None:
        """Step the execution until it completes, fails or suspends."""

        execution = db.session.get(Execution, execution_id)
        if execution is None:
            current_app.logger.warning("execution %s not found", execution_id)
            return None

        run_started = time.monotonic()
        while True:
            outcome = self.step(execution, run_started=run_started)
            if not isinstance(outcome, Continue):
                return outcome

    def step(self, execution: Execution, run_started: float | None = None) -> ExecutionOutcome:
        """Execute the node at ``execution.current_node_id`` and persist the result."""

        db.session.refresh(execution)
        if execution.status != RUNNING:
            return Fail(f"execution is {execution.status}", kind=execution.status)

        limit_failure = self.limits.check(execution.step_count, run_started)
        if limit_failure is not None:
            return self._fail(execution, limit_failure, execution.current_node_id)

        try:
            graph = self._graph(execution)
        except DefinitionError as exc:
            return self._fail(execution, Fail(str(exc), kind=exc.kind), execution.current_node_id)

        node_id = execution.current_node_id
        step_number = execution.step_count + 1
        now = self.clock()
        result = advance(graph, node_id, execution.context, self.adapters, now)
        outcome = result.outcome

        if isinstance(outcome, Suspend) and outcome.kind == "input":
            return self._suspend_for_input(execution, graph, result.context, result.logs, step_number, now)

        store.persist_logs(execution.id, result.logs, step=step_number)

        values: dict[str, Any] = {
            "context_json": dump_json(result.context),
            "step_count": step_number,
        }
        if isinstance(outcome, Continue):
            values["current_node_id"] = outcome.next_node_id
        elif isinstance(outcome, Complete):
            values.update(status=COMPLETED, completed_at=now)
        elif isinstance(outcome, Suspend):
            values.update(status=WAITING, next_run_at=outcome.resume_at)
        elif isinstance(outcome, Fail):
            values.update(status=FAILED, completed_at=now, error_message=outcome.message)

        if not store.transition(execution, RUNNING, values, expected_node_id=node_id):
            return self._lost_race(execution)
        return outcome

    def resume(
        self,
        execution: Execution,
        from_status: str,
        context_updates: dict[str, Any] | None = None,
        message: str = "execution resumed",
    ) -> ExecutionOutcome | None:
        """Leave a suspension point and position the execution on the following node.

        Returns ``None`` when the execution was no longer in ``from_status``.
        The caller is responsible for dispatching the drive loop afterwards.
        """

        db.session.refresh(execution)
        if execution.status != from_status:
            return None

        context = merge(execution.context, context_updates or {})
        suspended_at = execution.current_node_id
        try:
            outcome = resume_target(self._graph(execution), suspended_at)
        except DefinitionError as exc:
            outcome = Fail(str(exc), kind=exc.kind)

        now = self.clock()
        values: dict[str, Any] = {"context_json": dump_json(context), "next_run_at": None}
        if isinstance(outcome, Continue):
            values.update(status=RUNNING, current_node_id=outcome.next_node_id)
        elif isinstance(outcome, Complete):
            values.update(status=COMPLETED, completed_at=now)
        else:
            values.update(status=FAILED, completed_at=now, error_message=outcome.message)

        store.persist_log(execution.id, "info", message, suspended_at)
        if not store.transition(execution, from_status, values, expected_node_id=suspended_at):
            return None
        if isinstance(outcome, Fail):
            store.persist_log(execution.id, "error", outcome.message, suspended_at, {"type": outcome.kind})
        return outcome

    def cancel(self, execution: Execution, reason: str = "cancelled by operator") -> bool:
        """Mark a non-terminal execution as cancelled and close its open waypoint."""

        now = self.clock()
        cancelled = store.transition(
            execution,
            (RUNNING, WAITING, WAITING_INPUT),
            {"status": CANCELLED, "completed_at": now, "error_message": reason, "next_run_at": None},
        )
        if not cancelled:
            return False

        pending_rows = PendingInput.query.filter_by(
            execution_id=execution.id, status=PENDING_WAITING
        ).all()
        for pending in pending_rows:
            store.set_pending_status(pending.id, EXPIRED, now)
        store.persist_log(execution.id, "warn", reason, execution.current_node_id)
        return True

    def _graph(self, execution: Execution) -> WorkflowGraph:
        return parse_graph(execution.definition_snapshot)

    def _suspend_for_input(
        self,
        execution: Execution,
        graph: WorkflowGraph,
        context: dict[str, Any],
        logs: list[LogRecord],
        step_number: int,
        now: datetime,
    ) -> ExecutionOutcome:
        node_id = execution.current_node_id
        node = graph.node(node_id)
        try:
            pending = open_pending_input(execution, node, context, now, self.pending_ttl)
        except DefinitionError as exc:
            failure = Fail(str(exc), kind=exc.kind)
        except ExecutionStateError as exc:
            failure = Fail(str(exc), kind=CONVERSATION_BUSY)
        else:
            conversation_id = pending.conversation_id
            store.persist_logs(execution.id, logs, step=step_number)
            logs = []
            values = {
                "status": WAITING_INPUT,
                "context_json": dump_json(context),
                "step_count": step_number,
            }
            try:
                moved = store.transition(
                    execution, RUNNING, values, expected_node_id=node_id, extra=[pending]
                )
            except IntegrityError:
                db.session.rollback()
                failure = Fail(
                    f"conversation {conversation_id} is already awaiting input",
                    kind=CONVERSATION_BUSY,
                )
            else:
                if not moved:
                    return self._lost_race(execution)
                return Suspend("input", pending_input_id=pending.id)

        logs = logs + [LogRecord("error", failure.message, node_id, {"type": failure.kind})]
        store.persist_logs(execution.id, logs, step=step_number)
        values = {
            "status": FAILED,
            "context_json": dump_json(context),
            "step_count": step_number,
            "completed_at": now,
            "error_message": failure.message,
        }
        if not store.transition(execution, RUNNING, values, expected_node_id=node_id):
            return self._lost_race(execution)
        return failure

    def _fail(self, execution: Execution, failure: Fail, node_id: str | None) -> ExecutionOutcome:
        store.persist_log(execution.id, "error", failure.message, node_id, {"type": failure.kind})
        values = {
            "status": FAILED,
            "completed_at": self.clock(),
            "error_message": failure.message,
        }
        if not store.transition(execution, RUNNING, values):
            return self._lost_race(execution)
        return failure

    def _lost_race(self, execution: Execution) -> ExecutionOutcome:
        db.session.refresh(execution)
        current_app.logger.info(
            "execution %s changed to %s while stepping; halting", execution.id, execution.status
        )
        return Fail(f"execution is {execution.status}", kind=execution.status)
