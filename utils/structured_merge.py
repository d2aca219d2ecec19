"""Deterministic deep-merge and sanitization for JSON-like attribute trees.

Card data bags are merged here on every upsert. Arrays concatenate and then
dedupe on a content key (case and surrounding whitespace are ignored for
strings), objects merge key by key, and scalars are overwritten by the
source. Inputs are never mutated.

Merging a scalar with an object or array is not type-checked: the source
simply wins.
"""

from __future__ import annotations

import json
from typing import Any, Dict


def _is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def stable_stringify(value: Any) -> str:
    """Canonical string form used as a dedupe key.

    Object keys are sorted and strings are trimmed and lowercased, so two
    structurally equal values always produce the same key.
    """
    if _is_array(value):
        return "[" + ",".join(stable_stringify(item) for item in value) + "]"
    if isinstance(value, dict):
        entries = sorted(value.items(), key=lambda item: str(item[0]))
        return "{" + ",".join(
            f"{json.dumps(str(key))}:{stable_stringify(val)}" for key, val in entries
        ) + "}"
    if isinstance(value, str):
        return json.dumps(value.strip().lower())
    return json.dumps(value, default=str)


def _dedupe_key(item: Any) -> str:
    if isinstance(item, str):
        return item.strip().lower()
    return stable_stringify(item)


def sanitize_structured_value(value: Any) -> Any:
    """Trim strings, recurse into containers and dedupe array items.

    The first occurrence of a duplicate wins and keeps its own casing.
    """
    if _is_array(value):
        seen = set()
        result = []
        for item in (sanitize_structured_value(entry) for entry in value):
            key = _dedupe_key(item)
            if key in seen:
                continue
            seen.add(key)
            result.append(item)
        return result
    if isinstance(value, dict):
        return {key: sanitize_structured_value(val) for key, val in value.items()}
    if isinstance(value, str):
        return value.strip()
    return value


def merge_structured_values(target: Any, source: Any) -> Any:
    """Merge ``source`` into ``target`` and return a new sanitized value."""
    if _is_array(target) and _is_array(source):
        return sanitize_structured_value([*target, *source])
    if isinstance(target, dict) and isinstance(source, dict):
        result: Dict[str, Any] = {}
        for key in [*target.keys(), *(k for k in source.keys() if k not in target)]:
            if key in target and key in source:
                result[key] = merge_structured_values(target[key], source[key])
            elif key in target:
                result[key] = sanitize_structured_value(target[key])
            else:
                result[key] = sanitize_structured_value(source[key])
        return result
    # None is JSON null here and still counts as a defined source value.
    return sanitize_structured_value(source)


def sanitize_structured_object(value: Any) -> Dict[str, Any]:
    sanitized = sanitize_structured_value(value if value is not None else {})
    return sanitized if isinstance(sanitized, dict) else {}


__all__ = [
    "stable_stringify",
    "sanitize_structured_value",
    "merge_structured_values",
    "sanitize_structured_object",
]
