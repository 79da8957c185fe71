"""Workflow definition model."""

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..utils.clock import utcnow
from ..utils.jsonfield import dump_json, load_json

TRIGGER_TYPES = (
    "message_received",
    "keyword",
    "stage_changed",
    "manual",
    "scheduled",
)


class Workflow(db.Model):
    """Represents an authored automation graph and its trigger binding."""

    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    trigger_type = db.Column(db.String(32), nullable=False, default="manual")
    trigger_config_json = db.Column(db.Text, nullable=False, default="{}")
    graph_json = db.Column(db.Text, nullable=False, default="{}")
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def trigger_config(self) -> dict[str, Any]:
        config = load_json(self.trigger_config_json, {})
        return config if isinstance(config, dict) else {}

    @trigger_config.setter
    def trigger_config(self, value: dict[str, Any]) -> None:
        self.trigger_config_json = dump_json(value or {})

    @property
    def graph(self) -> dict[str, Any]:
        graph = load_json(self.graph_json, {})
        return graph if isinstance(graph, dict) else {}

    @graph.setter
    def graph(self, value: dict[str, Any]) -> None:
        self.graph_json = dump_json(value or {})

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Workflow {self.name!r}>"
