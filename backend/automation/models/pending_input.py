"""Pending input model: an execution parked until a human replies."""

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..utils.clock import utcnow
from ..utils.jsonfield import dump_json, load_json

WAITING = "waiting"
RESOLVED = "resolved"
EXPIRED = "expired"


class PendingInput(db.Model):
    """Open waypoint of a suspended execution, keyed by conversation."""

    __tablename__ = "workflow_pending_inputs"

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = db.Column(db.String(64), nullable=False)
    conversation_id = db.Column(db.String(128), nullable=False, index=True)
    # Equals conversation_id while waiting, NULL otherwise: one open waypoint per conversation.
    waiting_conversation_id = db.Column(db.String(128), nullable=True, unique=True)
    node_id = db.Column(db.String(128), nullable=False)
    status = db.Column(
        db.Enum(WAITING, RESOLVED, EXPIRED, name="pending_input_status"),
        nullable=False,
        default=WAITING,
        index=True,
    )
    input_type = db.Column(db.String(32), nullable=False, default="any")
    config_json = db.Column(db.Text, nullable=False, default="{}")
    response_json = db.Column(db.Text, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    resolved_at = db.Column(db.DateTime, nullable=True)

    @property
    def config(self) -> dict[str, Any]:
        config = load_json(self.config_json, {})
        return config if isinstance(config, dict) else {}

    @config.setter
    def config(self, value: dict[str, Any]) -> None:
        self.config_json = dump_json(value or {})

    @property
    def response(self) -> Any:
        return load_json(self.response_json, None)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<PendingInput {self.id} {self.status} conv={self.conversation_id}>"
