"""
Base protocol and types for the document store collaborator.

This module defines the DocumentStore protocol that all backends must
implement, along with the typed Snapshot delivered to live listeners and
the write operations accepted by batches and transactions.

Documents are plain JSON-compatible dictionaries addressed by slash
separated paths with an even number of segments:
    containers/{id}
    containers/{id}/items/{id}

Invariants:
    - Every stored document carries its own "id" field (last path segment)
    - run_transaction() and batch() are atomic: all writes land or none do
    - A listener receives a full Snapshot of its collection, never a delta
    - Snapshot.removed is True once the collection's parent document is gone
    - Transport failures surface as StoreUnavailableError

How to change safely:
    - Protocol changes require updating all implementations
    - Keep Snapshot conversion at the boundary; callers never see raw
      backend objects
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from ..errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Document = Dict[str, Any]


def split_path(path: str) -> List[str]:
    """Split and validate a document or collection path."""
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError(f"Invalid store path: {path!r}")
    return parts


def collection_of(path: str) -> str:
    """Collection path containing the document at ``path``."""
    parts = split_path(path)
    if len(parts) % 2 != 0:
        raise ValueError(f"Not a document path: {path}")
    return "/".join(parts[:-1])


def doc_id_of(path: str) -> str:
    return split_path(path)[-1]


def parent_document(collection_path: str) -> Optional[str]:
    """Document owning a sub-collection, or None for root collections."""
    parts = split_path(collection_path)
    if len(parts) % 2 != 1:
        raise ValueError(f"Not a collection path: {collection_path}")
    if len(parts) == 1:
        return None
    return "/".join(parts[:-1])


def group_of(collection_path: str) -> str:
    """Collection-group name (last segment) of a collection path."""
    return split_path(collection_path)[-1]


def matches(data: Document, where: Optional[Dict[str, Any]]) -> bool:
    """Equality filter shared by all backends."""
    if not where:
        return True
    return all(data.get(k) == v for k, v in where.items())


def order_and_limit(
    docs: List[Document],
    order_by: Optional[str],
    descending: bool,
    limit: Optional[int],
) -> List[Document]:
    """Ordering and limiting shared by all backends."""
    if order_by:
        docs = sorted(
            docs,
            key=lambda d: (d.get(order_by) is None, d.get(order_by)),
            reverse=descending,
        )
    if limit is not None:
        docs = docs[:limit]
    return docs


def overlay_writes(
    committed: Dict[str, Document],
    writes: List["WriteOp"],
    collection: str,
) -> Dict[str, Document]:
    """Documents of ``collection`` as a transaction sees them.

    Args:
        committed: Committed documents of the collection, keyed by path
        writes: Buffered writes of the transaction, in order
        collection: Collection path

    Returns:
        A new path -> document mapping with the writes applied
    """
    prefix = collection.strip("/")
    view = dict(committed)
    for op in writes:
        if collection_of(op.path) != prefix:
            continue
        if op.kind is WriteKind.DELETE:
            view.pop(op.path, None)
            continue
        data = dict(op.data or {})
        data["id"] = doc_id_of(op.path)
        existing = view.get(op.path)
        if op.merge and existing is not None:
            data = {**existing, **data}
        view[op.path] = data
    return view


@dataclass(frozen=True)
class Snapshot:
    """Full state of one collection delivered to a live listener.

    Attributes:
        collection: Collection path the listener is attached to
        items: Every matching document, as plain dictionaries
        removed: Whether the collection's parent document no longer exists
    """

    collection: str
    items: List[Document] = field(default_factory=list)
    removed: bool = False


class WriteKind(Enum):
    SET = "set"
    DELETE = "delete"


@dataclass(frozen=True)
class WriteOp:
    """One write inside a batch.

    Attributes:
        kind: SET or DELETE
        path: Document path
        data: Document body for SET
        merge: Merge into an existing document instead of replacing it
    """

    kind: WriteKind
    path: str
    data: Optional[Document] = None
    merge: bool = False

    @classmethod
    def set(cls, path: str, data: Document, merge: bool = False) -> WriteOp:
        return cls(WriteKind.SET, path, data, merge)

    @classmethod
    def delete(cls, path: str) -> WriteOp:
        return cls(WriteKind.DELETE, path)


SnapshotCallback = Callable[[Snapshot], None]


class ListenerHandle:
    """Handle to a live query; close() is idempotent."""

    def __init__(self, collection: str, detach: Callable[[], None]) -> None:
        self.collection = collection
        self._detach = detach
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._detach()


class Transaction(Protocol):
    """Read-modify-write view handed to run_transaction() callbacks.

    Reads see committed state overlaid with the callback's own buffered
    writes; writes are applied atomically when the callback returns without
    raising. No other write can commit while the callback runs, so a
    query() inside it is consistent with the writes it buffers.
    """

    async def get(self, path: str) -> Optional[Document]:
        ...

    async def query(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Document]:
        ...

    def set(self, path: str, data: Document, merge: bool = False) -> None:
        ...

    def delete(self, path: str) -> None:
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Consistency contract:
        - Point reads return the latest committed document
        - Transactions serialise with every other write on the store
        - Listeners are notified after the write that changed their
          collection has committed, outside any store lock

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.set("containers/c1", {"name": "Home"})
        >>> handle = await store.listen("containers/c1/items", on_snapshot)
        >>> handle.close()
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StoreUnavailableError: If the backend cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources and detach all listeners."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def get(self, path: str) -> Optional[Document]:
        """Point read; None when the document does not exist."""
        ...

    @abstractmethod
    async def set(self, path: str, data: Document, merge: bool = False) -> None:
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run an atomic read-modify-write.

        Any exception raised by ``fn`` aborts the transaction without
        writing and propagates to the caller.
        """
        ...

    @abstractmethod
    async def batch(self, ops: List[WriteOp]) -> None:
        """Apply several writes atomically."""
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        ...

    @abstractmethod
    async def query_group(
        self,
        group: str,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Document]:
        """Query every collection whose last path segment is ``group``."""
        ...

    @abstractmethod
    async def listen(
        self,
        collection: str,
        callback: SnapshotCallback,
        where: Optional[Dict[str, Any]] = None,
    ) -> ListenerHandle:
        """Attach a live query.

        The callback receives the current Snapshot before listen() returns
        and a fresh full Snapshot after every committed change to the
        collection or its parent document.
        """
        ...


def create_document_store(config: Any) -> DocumentStore:
    """Factory function to create a document store from configuration.

    Args:
        config: StoreConfig

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryDocumentStore
    from .sqlite import SqliteDocumentStore

    if config.backend == StoreBackend.MEMORY:
        return InMemoryDocumentStore()
    elif config.backend == StoreBackend.SQLITE:
        return SqliteDocumentStore(
            data_dir=config.data_dir,
            db_name=config.db_name,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")


__all__ = [
    "Document",
    "DocumentStore",
    "ListenerHandle",
    "Snapshot",
    "SnapshotCallback",
    "StoreUnavailableError",
    "Transaction",
    "WriteKind",
    "WriteOp",
    "collection_of",
    "create_document_store",
    "doc_id_of",
    "group_of",
    "matches",
    "order_and_limit",
    "overlay_writes",
    "parent_document",
    "split_path",
]
