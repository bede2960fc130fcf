"""
Audit event fingerprints.

A fingerprint is a 32-bit FNV-1a hash, rendered as 8 lowercase hex digits,
over ``type|container_id|actor_id|payload_json``. The hash runs over UTF-16
code units so fingerprints written by other clients of the same store
compare equal.
"""

from __future__ import annotations

import json
from typing import Any

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193

UNSTRINGIFIABLE = "[unstringifiable]"


def fnv1a32_hex(value: Any) -> str:
    """FNV-1a 32-bit hash of ``value`` as 8 hex digits.

    Example:
        >>> fnv1a32_hex("a")
        'e40c292c'
    """
    text = "" if value is None else str(value)
    data = text.encode("utf-16-le", "surrogatepass")
    h = FNV_OFFSET_BASIS
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return f"{h:08x}"


def compact_json(value: Any) -> str:
    """Compact JSON in insertion order.

    Raises:
        TypeError: If the value is not JSON-serialisable
        ValueError: On circular references
    """
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def build_fingerprint(
    event_type: str | None,
    container_id: str | None,
    actor_id: str | None,
    payload: Any,
) -> str:
    """Fingerprint identifying a logical audit event."""
    t = "" if event_type is None else str(event_type)
    c = "" if container_id is None else str(container_id)
    a = "" if actor_id is None else str(actor_id)
    if payload is None:
        p = ""
    else:
        try:
            p = compact_json(payload)
        except (TypeError, ValueError):
            p = UNSTRINGIFIABLE
    return fnv1a32_hex(f"{t}|{c}|{a}|{p}")
