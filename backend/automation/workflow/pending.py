"""Pending-input manager: resumes executions parked on a human reply."""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.execution import FAILED, WAITING_INPUT, Execution
from ..models.pending_input import EXPIRED, WAITING, PendingInput
from ..utils.clock import utcnow
from . import store
from .dispatcher import ExecutionDispatcher, get_dispatcher
from .engine import ExecutionEngine
from .errors import DefinitionError
from .replies import accepts_reply, reply_context_updates
from .triggers import ExecutionHandle

INPUT_TIMEOUT = "input_timeout"


class PendingInputManager:
    def __init__(
        self,
        engine: ExecutionEngine | None = None,
        dispatcher: ExecutionDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine or ExecutionEngine.from_app()
        self.dispatcher = dispatcher or get_dispatcher()
        self.clock = clock

    def on_external_reply(self, conversation_id: str, payload: Any) -> ExecutionHandle | None:
        """Resume the execution waiting on ``conversation_id``, if there is one.

        Replies for conversations without an open waypoint are ignored. The
        call never raises to the ingestion path.
        """

        if not conversation_id:
            return None
        reply = payload if isinstance(payload, dict) else {"text": "" if payload is None else str(payload)}

        try:
            return self._resolve(str(conversation_id), reply)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("failed to process reply for conversation %s", conversation_id)
            return None

    def expire_pending(self, now: datetime | None = None) -> int:
        """Expire waiting inputs past their deadline and fail their executions."""

        now = now or self.clock()
        overdue = (
            PendingInput.query.filter(PendingInput.status == WAITING)
            .filter(PendingInput.expires_at.isnot(None))
            .filter(PendingInput.expires_at <= now)
            .all()
        )

        expired = 0
        for pending in overdue:
            reason = f"no reply received for node {pending.node_id}"
            if self._fail_waiting(pending, INPUT_TIMEOUT, reason, now):
                expired += 1
        return expired

    def _fail_waiting(self, pending: PendingInput, kind: str, reason: str, now: datetime) -> bool:
        """Close ``pending`` and fail its execution. Returns ``False`` if already closed."""

        if not store.set_pending_status(pending.id, EXPIRED, now):
            return False
        execution = db.session.get(Execution, pending.execution_id)
        if execution is None:
            return True
        message = f"{kind}: {reason}"
        store.persist_log(execution.id, "error", message, pending.node_id, {"type": kind})
        store.transition(
            execution,
            WAITING_INPUT,
            {"status": FAILED, "completed_at": now, "error_message": message},
        )
        return True

    def _resolve(self, conversation_id: str, reply: dict[str, Any]) -> ExecutionHandle | None:
        pending = store.waiting_input_for_conversation(conversation_id)
        if pending is None:
            return None

        try:
            accepted, reason = accepts_reply(pending.config, reply)
        except DefinitionError as exc:
            self._fail_waiting(pending, exc.kind, str(exc), self.clock())
            return None
        if not accepted:
            store.persist_log(
                pending.execution_id,
                "warn",
                f"reply rejected: {reason}",
                pending.node_id,
                {"reply": reply},
            )
            return None

        now = self.clock()
        if not store.claim_pending_input(pending, reply, now):
            return None

        execution = db.session.get(Execution, pending.execution_id)
        if execution is None:
            return None

        outcome = self.engine.resume(
            execution,
            WAITING_INPUT,
            reply_context_updates(pending.config, reply),
            message="reply received",
        )
        if outcome is None:
            return None

        if execution.status == "running":
            self.dispatcher.submit(execution.id)
        db.session.refresh(execution)
        return ExecutionHandle(execution.id, execution.workflow_id, execution.status)
