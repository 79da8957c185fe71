"""Execution context helpers: dotted lookups and ``{{ var }}`` interpolation."""
from __future__ import annotations

import re
from copy import deepcopy
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_MISSING = object()


def resolve_path(context: dict[str, Any], path: str, default: Any = None) -> Any:
    """Return the value at a dotted ``path`` such as ``lead.stage``."""

    value: Any = context
    for key in path.strip().split("."):
        if isinstance(value, dict):
            value = value.get(key, _MISSING)
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            value = _MISSING
        if value is _MISSING:
            return default
    return value


def render(template: Any, context: dict[str, Any]) -> Any:
    """Interpolate placeholders in strings, recursing into dicts and lists.

    Unknown variables render as an empty string. A string that consists of a
    single placeholder keeps the referenced value's type.
    """

    if isinstance(template, str):
        whole = _PLACEHOLDER.fullmatch(template.strip())
        if whole is not None:
            value = resolve_path(context, whole.group(1))
            return "" if value is None else value

        def _replace(match: re.Match[str]) -> str:
            value = resolve_path(context, match.group(1))
            return "" if value is None else str(value)

        return _PLACEHOLDER.sub(_replace, template)
    if isinstance(template, dict):
        return {key: render(value, context) for key, value in template.items()}
    if isinstance(template, list):
        return [render(item, context) for item in template]
    return template


def render_text(template: Any, context: dict[str, Any]) -> str:
    value = render(template if template is not None else "", context)
    return value if isinstance(value, str) else str(value)


def merge(context: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``context`` with ``updates`` merged in, nested dicts included."""

    merged = deepcopy(context)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge(current, value)
        else:
            merged[key] = deepcopy(value)
    return merged
