"""Shared utility functions used across preprod modules."""
from __future__ import annotations

import json
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def content_to_text(content: Any) -> str:
    """Render opaque content as text: strings pass through, everything else is JSON."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


def stored_content(value: str | None) -> Any:
    """Decode a stored content column back to its original shape.

    Content is stored JSON-encoded; plain strings that were stored verbatim
    come back unchanged.
    """
    return json_parse(value, value or "")
