"""
Append-only audit log for vaultsync.

The AuditLog appends lifecycle events under
``containers/{id}/auditEvents/{event_id}``. It ensures:
- Only allow-listed event types are written (see policy.py)
- Retried client emits inside the dedup window are dropped
- Audit failures never propagate to the caller of a mutation

Invariants:
    - Events are never mutated or deleted by this module
    - A duplicate is judged against the single most recent event of the
      container only (identical fingerprint, |now - created_at| <= window)
    - A failed lookback falls through to an insert
    - record() never raises for store failures; the error is returned

How to change safely:
    - Keep the fingerprint input format stable; stored fingerprints from
      older clients must keep comparing equal
    - Test dedup with an injected clock, never with sleeps
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from ..config import AuditConfig
from ..model.entities import AUDIT_EVENTS, child_collection_path, now_ms
from ..store.base import DocumentStore
from .fingerprint import build_fingerprint
from .policy import is_client_writable

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """One stored audit event.

    Attributes:
        id: Event id
        container_id: Container the event belongs to
        type: Event type, e.g. ``ITEM_UPDATED``
        actor_id: Acting user id
        payload: Already-normalised payload
        created_at: Observed time (Unix ms)
        fingerprint: Dedup fingerprint
    """

    id: str
    container_id: str
    type: str
    actor_id: str | None
    payload: dict[str, Any] | None
    created_at: int
    fingerprint: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "container_id": self.container_id,
            "type": self.type,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "created_at": self.created_at,
            "fingerprint": self.fingerprint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        return cls(
            id=str(data["id"]),
            container_id=str(data.get("container_id") or ""),
            type=str(data.get("type") or "UNKNOWN"),
            actor_id=data.get("actor_id"),
            payload=data.get("payload"),
            created_at=int(data.get("created_at") or 0),
            fingerprint=str(data.get("fingerprint") or ""),
        )


@dataclass
class AuditResult:
    """Outcome of a record() call.

    Attributes:
        recorded: The event was written
        skipped: Deliberate no-op (policy filter, dedup, or disabled)
        duplicate: Skipped because it matched the most recent event
        event: The written event, if any
        error: Store error message when the write failed
    """

    recorded: bool = False
    skipped: bool = False
    duplicate: bool = False
    event: AuditEvent | None = None
    error: str | None = None


class AuditLog:
    """Best-effort, deduplicated audit trail.

    Example:
        >>> audit = AuditLog(store)
        >>> result = await audit.record("c1", "ITEM_VIEWED", "u1", {"item_id": "i1"})
        >>> result.recorded
        True
    """

    def __init__(
        self,
        store: DocumentStore,
        config: AuditConfig | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the audit log.

        Args:
            store: Document store to append to
            config: Audit configuration
            clock: Millisecond clock, injectable for tests
        """
        self.store = store
        self.config = config or AuditConfig()
        self._clock = clock or now_ms
        self._pending: set[asyncio.Task[AuditResult]] = set()

    def _collection(self, container_id: str) -> str:
        return child_collection_path(container_id, AUDIT_EVENTS)

    async def record(
        self,
        container_id: str,
        event_type: str,
        actor_id: str | None,
        payload: Any = None,
    ) -> AuditResult:
        """Append one event unless filtered or a duplicate.

        Args:
            container_id: Container the event belongs to
            event_type: Event type
            actor_id: Acting user id
            payload: JSON-compatible dict; anything else is stored as None

        Returns:
            AuditResult describing what happened
        """
        if not self.config.enabled:
            return AuditResult(skipped=True)

        if not container_id or not is_client_writable(event_type):
            logger.debug(
                "Audit event skipped by policy",
                extra={"container_id": container_id, "event_type": event_type},
            )
            return AuditResult(skipped=True)

        safe_payload = payload if isinstance(payload, dict) else None
        fingerprint = build_fingerprint(event_type, container_id, actor_id, safe_payload)
        now = self._clock()

        if await self._is_duplicate(container_id, fingerprint, now):
            logger.debug(
                "Duplicate audit event skipped",
                extra={
                    "container_id": container_id,
                    "event_type": event_type,
                    "fingerprint": fingerprint,
                },
            )
            return AuditResult(skipped=True, duplicate=True)

        event = AuditEvent(
            id=uuid.uuid4().hex,
            container_id=str(container_id),
            type=str(event_type),
            actor_id=actor_id,
            payload=safe_payload,
            created_at=now,
            fingerprint=fingerprint,
        )
        try:
            await self.store.set(f"{self._collection(container_id)}/{event.id}", event.to_dict())
        except Exception as e:
            logger.warning(
                f"Audit write failed: {e}",
                extra={"container_id": container_id, "event_type": event_type},
            )
            return AuditResult(error=str(e))

        return AuditResult(recorded=True, event=event)

    async def _is_duplicate(self, container_id: str, fingerprint: str, now: int) -> bool:
        try:
            rows = await self.store.query(
                self._collection(container_id),
                order_by="created_at",
                descending=True,
                limit=1,
            )
        except Exception as e:
            logger.debug(f"Audit dedup lookback failed: {e}", extra={"container_id": container_id})
            return False

        if not rows:
            return False
        last = rows[0]
        last_at = last.get("created_at")
        if last.get("fingerprint") != fingerprint:
            return False
        if not isinstance(last_at, int) or isinstance(last_at, bool) or not last_at:
            return False
        return abs(now - last_at) <= self.config.dedup_window_ms

    async def latest(self, container_id: str) -> AuditEvent | None:
        """Most recent event for a container."""
        events = await self.events(container_id, limit=1)
        return events[0] if events else None

    async def events(self, container_id: str, limit: int | None = 50) -> list[AuditEvent]:
        """Events for a container, newest first."""
        rows = await self.store.query(
            self._collection(container_id),
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [AuditEvent.from_dict(r) for r in rows]

    # Fire-and-forget emission

    def emit(
        self,
        container_id: str,
        event_type: str,
        actor_id: str | None,
        payload: Any = None,
    ) -> asyncio.Task[AuditResult]:
        """Schedule record() without awaiting it.

        The caller never observes the outcome; it is logged when the task
        finishes. Use drain() to wait for pending emissions.
        """
        task = asyncio.create_task(self.record(container_id, event_type, actor_id, payload))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[AuditResult]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.debug("Audit emission cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Audit emission failed: {exc}", exc_info=exc)
            return
        result = task.result()
        if result.error:
            logger.warning("Audit emission not recorded", extra={"error": result.error})
        elif result.recorded and result.event is not None:
            logger.debug(
                "Audit event recorded",
                extra={
                    "container_id": result.event.container_id,
                    "event_type": result.event.type,
                },
            )

    @property
    def pending(self) -> int:
        """Number of emissions still in flight."""
        return len(self._pending)

    async def drain(self) -> list[AuditResult]:
        """Wait for every in-flight emission to finish.

        Returns:
            Results of the tasks that completed normally
        """
        results: list[AuditResult] = []
        while self._pending:
            batch = list(self._pending)
            done = await asyncio.gather(*batch, return_exceptions=True)
            results.extend(r for r in done if isinstance(r, AuditResult))
            # Done-callbacks run on the next loop iteration
            for task in batch:
                self._pending.discard(task)
        return results
