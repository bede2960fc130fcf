"""
In-memory document store implementation.

This module provides a simple in-memory backend for:
- Unit tests
- Integration tests
- Local development without a remote store

Invariants:
    - All data is lost on process exit
    - Same atomicity and listener semantics as the SQLite backend
    - Documents are deep-copied on the way in and out; callers never
      share mutable state with the store

How to change safely:
    - Keep interface compatible with the DocumentStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..errors import StoreUnavailableError
from .base import (
    Document,
    ListenerHandle,
    Snapshot,
    SnapshotCallback,
    WriteKind,
    WriteOp,
    collection_of,
    doc_id_of,
    group_of,
    matches,
    order_and_limit,
    overlay_writes,
    parent_document,
)
from .listeners import ListenerRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _MemoryTransaction:
    """Buffered writes over the committed document map."""

    def __init__(self, docs: Dict[str, Document]) -> None:
        self._docs = docs
        self.writes: List[WriteOp] = []

    async def get(self, path: str) -> Optional[Document]:
        committed = {path: self._docs[path]} if path in self._docs else {}
        own = [op for op in self.writes if op.path == path]
        doc = overlay_writes(committed, own, collection_of(path)).get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Document]:
        prefix = collection.strip("/")
        committed = {p: d for p, d in self._docs.items() if collection_of(p) == prefix}
        view = overlay_writes(committed, self.writes, prefix)
        return [copy.deepcopy(d) for _, d in sorted(view.items()) if matches(d, where)]

    def set(self, path: str, data: Document, merge: bool = False) -> None:
        self.writes.append(WriteOp.set(path, data, merge))

    def delete(self, path: str) -> None:
        self.writes.append(WriteOp.delete(path))


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore.

    Thread safety:
        Uses an asyncio lock to serialise writes. Safe to use from
        multiple coroutines on one event loop.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.set("containers/c1", {"name": "Home"})
        >>> await store.get("containers/c1")
        {'name': 'Home', 'id': 'c1'}
    """

    def __init__(self) -> None:
        self._docs: Dict[str, Document] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._listeners = ListenerRegistry()
        self._pending_failures: List[Exception] = []
        self._available = True

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close and detach all listeners. Data is kept for inspection."""
        self._connected = False
        self._listeners.clear()
        logger.debug("InMemoryDocumentStore closed")

    def _check(self, operation: str) -> None:
        if not self._connected:
            raise StoreUnavailableError("Not connected", operation=operation)
        if self._pending_failures:
            raise self._pending_failures.pop(0)
        if not self._available:
            raise StoreUnavailableError("Store unavailable", operation=operation)

    async def get(self, path: str) -> Optional[Document]:
        self._check("get")
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, path: str, data: Document, merge: bool = False) -> None:
        await self.batch([WriteOp.set(path, data, merge)])

    async def delete(self, path: str) -> None:
        await self.batch([WriteOp.delete(path)])

    async def run_transaction(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        self._check("transaction")
        async with self._lock:
            tx = _MemoryTransaction(self._docs)
            result = await fn(tx)
            touched = self._apply(tx.writes)
        self._listeners.notify(touched, self._snapshot)
        return result

    async def batch(self, ops: List[WriteOp]) -> None:
        self._check("batch")
        async with self._lock:
            touched = self._apply(ops)
        self._listeners.notify(touched, self._snapshot)

    def _apply(self, ops: List[WriteOp]) -> List[str]:
        """Apply writes to the document map. Caller holds the lock."""
        # Validate every path before touching state
        for op in ops:
            collection_of(op.path)

        touched = []
        for op in ops:
            if op.kind is WriteKind.DELETE:
                self._docs.pop(op.path, None)
            else:
                data = copy.deepcopy(op.data or {})
                data["id"] = doc_id_of(op.path)
                existing = self._docs.get(op.path)
                if op.merge and existing is not None:
                    merged = dict(existing)
                    merged.update(data)
                    data = merged
                self._docs[op.path] = data
            touched.append(op.path)
        return touched

    async def query(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        self._check("query")
        docs = self._collection_docs(collection, where)
        return copy.deepcopy(order_and_limit(docs, order_by, descending, limit))

    async def query_group(
        self,
        group: str,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Document]:
        self._check("query_group")
        docs = [
            d
            for p, d in self._docs.items()
            if group_of(collection_of(p)) == group and matches(d, where)
        ]
        return copy.deepcopy(docs)

    async def listen(
        self,
        collection: str,
        callback: SnapshotCallback,
        where: Optional[Dict[str, Any]] = None,
    ) -> ListenerHandle:
        self._check("listen")
        handle = self._listeners.add(collection, callback, where)
        self._listeners.deliver(collection, callback, self._snapshot(collection, where))
        return handle

    def _collection_docs(self, collection: str, where: Optional[Dict[str, Any]]) -> List[Document]:
        prefix = collection.strip("/")
        return [
            d
            for p, d in self._docs.items()
            if collection_of(p) == prefix and matches(d, where)
        ]

    def _snapshot(self, collection: str, where: Optional[Dict[str, Any]]) -> Snapshot:
        parent = parent_document(collection)
        removed = parent is not None and parent not in self._docs
        items = copy.deepcopy(self._collection_docs(collection, where))
        return Snapshot(collection=collection, items=items, removed=removed)

    # Testing helpers

    def fail_next(self, error: Exception | None = None) -> None:
        """Make the next store operation raise ``error`` (testing helper)."""
        self._pending_failures.append(
            error or StoreUnavailableError("Injected failure", operation="injected")
        )

    def set_available(self, available: bool) -> None:
        """Simulate a connectivity outage (testing helper)."""
        self._available = available

    def listener_count(self) -> int:
        """Number of attached live listeners (testing helper)."""
        return len(self._listeners)

    def paths(self, prefix: str = "") -> List[str]:
        """Sorted document paths under ``prefix`` (testing helper)."""
        return sorted(p for p in self._docs if p.startswith(prefix))
