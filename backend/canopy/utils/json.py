"""Consolidated JSON helpers for columns stored as JSON text."""

import json
from typing import Any


def parse_json_field(raw: str | dict | None) -> dict[str, Any] | None:
    """Parse a JSON string or dict, returning None on failure or empty.

    For dict-valued columns such as preset configs and timings.
    Returns None for: None, empty string, empty dict, invalid JSON, non-dict JSON.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw if raw else None
    if isinstance(raw, str):
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict) and parsed:
                return parsed
        except (ValueError, TypeError):
            pass
    return None


def parse_json_or_none(raw: str | dict | list | None) -> dict | list | None:
    """Parse a JSON string or return structured value as-is, None on failure.

    For columns that may hold a dict or a list (extra, children).
    Returns None for: None, empty string, invalid JSON.
    """
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, str):
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (ValueError, TypeError):
            return None
    return None


def dump_json_or_none(value: Any) -> str | None:
    """Serialize a value for a nullable JSON column. None stays NULL."""
    if value is None:
        return None
    return json.dumps(value)
