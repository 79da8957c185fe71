"""Execution log model definition."""

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..utils.clock import utcnow
from ..utils.jsonfield import load_json

LOG_LEVELS = ("info", "warn", "error")


class ExecutionLog(db.Model):
    """Append-only evidence of what an execution attempted at each node."""

    __tablename__ = "execution_logs"

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    node_id = db.Column(db.String(128), nullable=True)
    level = db.Column(db.Enum(*LOG_LEVELS, name="execution_log_level"), nullable=False)
    message = db.Column(db.Text, nullable=False)
    details_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @property
    def details(self) -> Any:
        return load_json(self.details_json, None)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<ExecutionLog {self.id} {self.level} for {self.execution_id}>"
