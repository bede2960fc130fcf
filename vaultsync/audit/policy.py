"""
Write policy for the audit log.

Only lifecycle and view events may be appended by this core. Fine-grained
mutation events come from a trusted server-side trigger and are skipped
here so the two sources never compete.
"""

from __future__ import annotations

ENTITY_PREFIXES = ("CONTAINER_", "SUBCONTAINER_", "ITEM_")

LIFECYCLE_SUFFIXES = (
    "CREATED",
    "UPDATED",
    "SHARED",
    "SHARE_REVOKED",
    "DELETE_REQUESTED",
    "OWNERSHIP_TRANSFERRED",
)

MOVE_EVENTS = frozenset(
    {
        "ITEM_MOVED_OUT",
        "ITEM_MOVED_IN",
        "SUBCONTAINER_MOVED_OUT",
        "SUBCONTAINER_MOVED_IN",
    }
)


def is_client_writable(event_type: str | None) -> bool:
    """Whether the core may append an event of this type."""
    if not event_type:
        return False
    t = str(event_type)
    if t.endswith("_VIEWED"):
        return True
    if t in MOVE_EVENTS:
        return True
    for prefix in ENTITY_PREFIXES:
        if t.startswith(prefix):
            return t[len(prefix):] in LIFECYCLE_SUFFIXES
    return False
