from __future__ import annotations

import re
from typing import Any

from fleet_shared.constants import MAX_STRING_LEN

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_MAX_DEPTH = 8


def sanitize_text(value: Any, max_len: int = MAX_STRING_LEN) -> str:
    text = _CONTROL_RE.sub("", str(value))
    if len(text) > max_len:
        return text[:max_len]
    return text


def sanitize_json(value: Any, depth: int = 0) -> Any:
    if depth > _MAX_DEPTH:
        return None
    if isinstance(value, dict):
        return {sanitize_text(key): sanitize_json(item, depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_json(item, depth + 1) for item in value]
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, bytes):
        return sanitize_text(value.decode("utf-8", errors="replace"))
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    return sanitize_text(value)


def sanitize_meta(value: Any) -> dict[str, Any] | None:
    """Clean free-form device metadata; anything but an object is rejected."""
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError("meta must be a JSON object")
    return sanitize_json(value)
