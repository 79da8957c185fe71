"""Collection of example workflow definitions shipped with the platform."""
from __future__ import annotations

from collections.abc import Iterable
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class WorkflowTemplate:
    """Metadata and graph of a ready-made workflow."""

    name: str
    trigger_type: str
    description: str
    trigger_config: dict[str, Any] = field(default_factory=dict)
    graph: dict[str, Any] = field(default_factory=dict)

    def definition(self) -> dict[str, Any]:
        return deepcopy(self.graph)


PRICE_REPLY = WorkflowTemplate(
    name="Price inquiry",
    trigger_type="keyword",
    description="Answer messages that mention 'precio' with the price list.",
    trigger_config={"keywords": ["precio"], "match_type": "contains"},
    graph={
        "nodes": [
            {"id": "trigger", "type": "trigger", "config": {}},
            {
                "id": "send_prices",
                "type": "action",
                "config": {
                    "action_type": "send_message",
                    "message": "Hola {{sender}}, nuestros precios empiezan en 49 EUR.",
                },
            },
        ],
        "edges": [{"from": "trigger", "to": "send_prices"}],
    },
)

FOLLOW_UP = WorkflowTemplate(
    name="Follow-up after one hour",
    trigger_type="stage_changed",
    description="Wait an hour after a lead becomes qualified, then check in.",
    trigger_config={"to_stage": "qualified"},
    graph={
        "nodes": [
            {"id": "trigger", "type": "trigger", "config": {}},
            {"id": "wait", "type": "wait", "config": {"duration": 1, "unit": "hours"}},
            {
                "id": "check_in",
                "type": "action",
                "config": {
                    "action_type": "send_message",
                    "message": "Any questions about our offer?",
                },
            },
        ],
        "edges": [
            {"from": "trigger", "to": "wait"},
            {"from": "wait", "to": "check_in"},
        ],
    },
)

BUDGET_QUALIFICATION = WorkflowTemplate(
    name="Budget qualification",
    trigger_type="keyword",
    description="Ask for the budget and route the lead by the answer.",
    trigger_config={"keywords": ["presupuesto", "budget"]},
    graph={
        "nodes": [
            {"id": "trigger", "type": "trigger", "config": {}},
            {
                "id": "ask_budget",
                "type": "action",
                "config": {
                    "action_type": "send_message",
                    "message": "What is your budget in EUR?",
                    "requires_reply": True,
                    "store_as": "budget",
                    "validation": {"type": "number", "errorMessage": "Please answer with a number"},
                },
            },
            {
                "id": "route",
                "type": "stage",
                "config": {
                    "cases": [
                        {
                            "label": "high",
                            "conditions": [
                                {"variable": "budget", "operator": "greater_equal", "value": 1000}
                            ],
                        }
                    ],
                    "default": "low",
                },
            },
            {
                "id": "promote",
                "type": "crm",
                "config": {"action": "update_stage", "stage": "qualified"},
            },
            {
                "id": "nurture",
                "type": "crm",
                "config": {"action": "add_tag", "tag": "nurture"},
            },
        ],
        "edges": [
            {"from": "trigger", "to": "ask_budget"},
            {"from": "ask_budget", "to": "route"},
            {"from": "route", "to": "promote", "label": "high"},
            {"from": "route", "to": "nurture", "label": "low"},
        ],
    },
)

_TEMPLATES: list[WorkflowTemplate] = [PRICE_REPLY, FOLLOW_UP, BUDGET_QUALIFICATION]


def iter_templates() -> Iterable[WorkflowTemplate]:
    """Yield the registered workflow templates."""

    yield from _TEMPLATES


def find_template(name: str) -> WorkflowTemplate | None:
    """Return a template by name, if available."""

    for template in _TEMPLATES:
        if template.name == name:
            return template
    return None
