"""Execution model: one in-flight run of a workflow."""

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..utils.clock import utcnow
from ..utils.jsonfield import dump_json, load_json

RUNNING = "running"
WAITING = "waiting"
WAITING_INPUT = "waiting_input"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

EXECUTION_STATUSES = (RUNNING, WAITING, WAITING_INPUT, COMPLETED, FAILED, CANCELLED)
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED})


class Execution(db.Model):
    """Persistent state of a workflow run, mutated only by the engine."""

    __tablename__ = "workflow_executions"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True, index=True
    )
    organization_id = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(
        db.Enum(*EXECUTION_STATUSES, name="execution_status"),
        nullable=False,
        default=RUNNING,
        index=True,
    )
    current_node_id = db.Column(db.String(128), nullable=True)
    context_json = db.Column(db.Text, nullable=False, default="{}")
    definition_json = db.Column(db.Text, nullable=False, default="{}")
    next_run_at = db.Column(db.DateTime, nullable=True, index=True)
    step_count = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    @property
    def context(self) -> dict[str, Any]:
        context = load_json(self.context_json, {})
        return context if isinstance(context, dict) else {}

    @context.setter
    def context(self, value: dict[str, Any]) -> None:
        self.context_json = dump_json(value or {})

    @property
    def definition_snapshot(self) -> dict[str, Any]:
        snapshot = load_json(self.definition_json, {})
        return snapshot if isinstance(snapshot, dict) else {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Execution {self.id} {self.status}>"
