"""Nested-path JSON extraction.

A miss is never an error: every function here returns ``None`` when the
body is not JSON, the path is empty or malformed, or a segment is absent.
"""

from __future__ import annotations

import json
from typing import Any

_MISSING = object()


def parse_json_body(body: str | bytes | None) -> Any:
    """Parse a response body, or return None if it is empty or not JSON."""
    if body is None:
        return None
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def extract_path(obj: Any, path: str | None) -> Any:
    """Walk a dot-separated ``path`` through nested JSON objects.

    Each segment must name a key of a dict at that level; lists are not
    indexed.

    Example:
        >>> extract_path({"data": {"item": {"models": [1, 2]}}}, "data.item.models")
        [1, 2]
        >>> extract_path({"data": {}}, "data.item.models") is None
        True
    """
    if not path or not path.strip():
        return None
    segments = path.strip().split(".")
    if any(not s for s in segments):
        return None

    current = obj
    for segment in segments:
        if not isinstance(current, dict):
            return None
        current = current.get(segment, _MISSING)
        if current is _MISSING:
            return None
    return current


def extract_from_body(body: str | bytes | None, path: str | None) -> Any:
    """Parse ``body`` and extract the payload at ``path``."""
    parsed = parse_json_body(body)
    if parsed is None:
        return None
    return extract_path(parsed, path)
