"""
Field-level diffs for audit payloads.

Values stored in a diff are normalised so that an audit payload stays
bounded no matter what a client writes:
    - strings longer than 180 characters are cut and suffixed with "…"
    - arrays of up to 8 elements are normalised element by element
    - longer arrays collapse to {"type": "array", "length": n}
    - other objects are serialised to JSON and cut at 220 characters
    - values that cannot be serialised become a sentinel string
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Any

from ..audit.fingerprint import compact_json

STRING_MAX_LENGTH = 180
OBJECT_MAX_LENGTH = 220
ARRAY_MAX_ITEMS = 8
ELLIPSIS = "…"

# Timestamp-only updates are noise
VOLATILE_FIELDS = frozenset({"edited_at", "viewed_at"})

_SCALARS = (str, int, float, bool)


def truncate(value: Any, max_length: int = STRING_MAX_LENGTH) -> str:
    text = "" if value is None else str(value)
    if len(text) <= max_length:
        return text
    return text[:max_length] + ELLIPSIS


def normalize_value(value: Any) -> Any:
    """Bound a value for storage in an audit payload."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return truncate(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return str(value)
        return value

    if isinstance(value, (list, tuple)):
        if len(value) > ARRAY_MAX_ITEMS:
            return {"type": "array", "length": len(value)}
        out = []
        for v in value:
            if v is None or isinstance(v, _SCALARS):
                out.append(normalize_value(v))
                continue
            try:
                out.append(truncate(compact_json(v)))
            except (TypeError, ValueError):
                out.append("[complex]")
        return out

    if isinstance(value, dict):
        try:
            return truncate(compact_json(value), OBJECT_MAX_LENGTH)
        except (TypeError, ValueError):
            return "[object]"

    try:
        return truncate(str(value))
    except Exception:
        return "[unknown]"


def _same(before: Any, after: Any) -> bool:
    if before is after:
        return True
    try:
        return compact_json(before) == compact_json(after)
    except (TypeError, ValueError):
        # Unserialisable values are assumed changed
        return False


def diff_for_update(
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    keys: Iterable[str] | None = None,
) -> dict[str, dict[str, Any]]:
    """Diff two document images.

    Args:
        before: Pre-image (None for a missing document)
        after: Post-image
        keys: Keys to compare; defaults to the union of both images

    Returns:
        Mapping of changed key to {"from": ..., "to": ...} with
        normalised values. Empty when nothing but volatile fields changed.

    Example:
        >>> diff_for_update({"name": "A"}, {"name": "B"})
        {'name': {'from': 'A', 'to': 'B'}}
    """
    b = before or {}
    a = after or {}
    if keys is None:
        keys = list(dict.fromkeys([*b.keys(), *a.keys()]))

    changes: dict[str, dict[str, Any]] = {}
    for key in keys:
        if key in VOLATILE_FIELDS:
            continue
        bv = b.get(key)
        av = a.get(key)
        if _same(bv, av):
            continue
        changes[key] = {"from": normalize_value(bv), "to": normalize_value(av)}
    return changes
