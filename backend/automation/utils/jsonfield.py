"""Helpers for JSON payloads stored in text columns."""
from __future__ import annotations

import json
from typing import Any


def load_json(raw: str | None, default: Any) -> Any:
    """Decode a stored JSON document, falling back to ``default`` when unreadable."""

    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str)
