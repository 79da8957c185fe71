"""Execution store: the only code that writes execution, log and pending-input rows."""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.execution import RUNNING, Execution
from ..models.logs import ExecutionLog
from ..models.pending_input import RESOLVED, WAITING, PendingInput
from ..models.workflow import Workflow
from ..utils.clock import utcnow
from ..utils.jsonfield import dump_json
from .walker import LogRecord


def persist_logs(execution_id: int, records: Iterable[LogRecord], step: int | None = None) -> None:
    """Append log entries and commit them, suppressing database errors."""

    entries = []
    for record in records:
        details = dict(record.details or {})
        if step is not None:
            details["step"] = step
        entries.append(
            ExecutionLog(
                execution_id=execution_id,
                node_id=record.node_id,
                level=record.level,
                message=record.message,
                details_json=dump_json(details) if details else None,
            )
        )
    if not entries:
        return

    try:
        db.session.add_all(entries)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to persist execution log for %s", execution_id)


def persist_log(
    execution_id: int,
    level: str,
    message: str,
    node_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    persist_logs(execution_id, [LogRecord(level, message, node_id, details)])


def create_execution(
    workflow: Workflow,
    context: dict[str, Any],
    entry_node_id: str | None,
) -> Execution:
    """Insert a running execution pinned to the workflow's current graph."""

    execution = Execution(
        workflow_id=workflow.id,
        organization_id=workflow.organization_id,
        status=RUNNING,
        current_node_id=entry_node_id,
        definition_json=workflow.graph_json or "{}",
        started_at=utcnow(),
    )
    execution.context = context
    db.session.add(execution)
    db.session.commit()
    return execution


def transition(
    execution: Execution,
    expected_status: str | Iterable[str],
    values: dict[str, Any],
    expected_node_id: Any = ...,
    extra: Iterable[Any] = (),
) -> bool:
    """Conditionally update ``execution`` if it is still in ``expected_status``.

    Returns ``False`` when another writer moved the row first. ``extra`` rows
    are added to the same commit.
    """

    statuses = [expected_status] if isinstance(expected_status, str) else list(expected_status)
    query = db.session.query(Execution).filter(
        Execution.id == execution.id, Execution.status.in_(statuses)
    )
    if expected_node_id is not ...:
        query = query.filter(Execution.current_node_id == expected_node_id)

    updated = query.update(values, synchronize_session=False)
    if updated != 1:
        db.session.rollback()
        return False

    for row in extra:
        db.session.add(row)
    db.session.commit()
    db.session.refresh(execution)
    return True


def claim_pending_input(pending: PendingInput, response: Any, now: datetime) -> bool:
    """Move a pending input from waiting to resolved; only one caller can win."""

    updated = (
        db.session.query(PendingInput)
        .filter(PendingInput.id == pending.id, PendingInput.status == WAITING)
        .update(
            {
                "status": RESOLVED,
                "resolved_at": now,
                "response_json": dump_json(response),
                "waiting_conversation_id": None,
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    if updated == 1:
        db.session.refresh(pending)
        return True
    return False


def set_pending_status(pending_id: int, status: str, now: datetime) -> bool:
    updated = (
        db.session.query(PendingInput)
        .filter(PendingInput.id == pending_id, PendingInput.status == WAITING)
        .update(
            {"status": status, "resolved_at": now, "waiting_conversation_id": None},
            synchronize_session=False,
        )
    )
    db.session.commit()
    return updated == 1


def waiting_input_for_conversation(conversation_id: str) -> PendingInput | None:
    return (
        PendingInput.query.filter_by(conversation_id=conversation_id, status=WAITING)
        .order_by(PendingInput.created_at.asc(), PendingInput.id.asc())
        .first()
    )
