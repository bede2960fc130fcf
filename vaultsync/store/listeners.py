"""
In-process live-query fan-out shared by the store backends.

Backends record which collections a commit touched and hand them to
ListenerRegistry.notify() once their lock is released. The registry asks
the backend for a fresh Snapshot per listener and invokes the callbacks.

Invariants:
    - Callbacks run after commit, never while a store lock is held
    - A failing callback is logged and does not affect other listeners
      or the writer that triggered it
    - Deleting a document notifies listeners of its sub-collections
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

from .base import ListenerHandle, Snapshot, SnapshotCallback, collection_of

logger = logging.getLogger(__name__)

SnapshotBuilder = Callable[[str, Optional[Dict[str, Any]]], Snapshot]


@dataclass
class _Listener:
    collection: str
    callback: SnapshotCallback
    where: Optional[Dict[str, Any]]


class ListenerRegistry:
    """Tracks live listeners for one store instance."""

    def __init__(self) -> None:
        self._listeners: Dict[int, _Listener] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._listeners)

    def add(
        self,
        collection: str,
        callback: SnapshotCallback,
        where: Optional[Dict[str, Any]],
    ) -> ListenerHandle:
        listener_id = next(self._ids)
        self._listeners[listener_id] = _Listener(collection, callback, where)
        return ListenerHandle(collection, lambda: self._listeners.pop(listener_id, None))

    def clear(self) -> None:
        self._listeners.clear()

    def deliver(self, listener_collection: str, callback: SnapshotCallback, snapshot: Snapshot) -> None:
        try:
            callback(snapshot)
        except Exception as e:
            logger.error(
                f"Listener callback failed: {e}",
                exc_info=True,
                extra={"collection": listener_collection},
            )

    def notify(self, touched_paths: Iterable[str], build: SnapshotBuilder) -> None:
        """Deliver fresh snapshots to listeners affected by written paths.

        Args:
            touched_paths: Document paths written or deleted by a commit
            build: Backend function producing a Snapshot for a listener
        """
        paths = list(touched_paths)
        if not paths or not self._listeners:
            return

        collections: Set[str] = {collection_of(p) for p in paths}
        affected = []
        for listener_id, listener in list(self._listeners.items()):
            if listener.collection in collections:
                affected.append((listener_id, listener))
                continue
            # Parent document written or deleted
            if any(listener.collection.startswith(p + "/") for p in paths):
                affected.append((listener_id, listener))

        for listener_id, listener in affected:
            if listener_id not in self._listeners:
                continue
            snapshot = build(listener.collection, listener.where)
            self.deliver(listener.collection, listener.callback, snapshot)
