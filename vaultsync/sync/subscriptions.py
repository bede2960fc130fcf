"""
Subscription lifecycle manager.

Keeps one live channel open per desired container, where

    desired = baseline ∪ {container_id : ref_count > 0}

The baseline is the set of containers the signed-in user owns; ref-counts
come from UI views that need live data for containers they do not own.

Invariants:
    - set_baseline(), retain(), release(), reconcile() and close() are the
      only mutators; state lives on the instance, never in module globals
    - Ref-count changes happen without a suspension point, so concurrent
      retain()/release() calls on one event loop never lose updates
    - release() never drives a count below zero
    - Reconciliation is serialised; teardown and setup are idempotent
    - Tearing down a channel purges every cached child of its container
    - Each snapshot replaces the cached subset it covers

How to change safely:
    - Add new per-container collections in ContainerChannel.open()
    - Keep snapshot handlers synchronous; they run inside store notifications
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from ..access.grant_store import GrantStore, parse_grants
from ..access.membership_store import MembershipStore, parse_memberships
from ..model.entities import (
    CONTAINERS,
    GRANTS,
    ITEMS,
    MEMBERSHIPS,
    SUBCONTAINERS,
    Container,
    EntityKind,
    child_collection_path,
)
from ..store.base import DocumentStore, ListenerHandle, Snapshot
from .cache import LocalCache, parse_entities

logger = logging.getLogger(__name__)


class ContainerChannel:
    """Live channel for one container: its document and child collections."""

    def __init__(
        self,
        container_id: str,
        store: DocumentStore,
        cache: LocalCache,
        memberships: MembershipStore,
        grants: GrantStore,
    ) -> None:
        self.container_id = container_id
        self.store = store
        self.cache = cache
        self.memberships = memberships
        self.grants = grants
        self._handles: list[ListenerHandle] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        """Attach every listener. Idempotent.

        Raises:
            StoreUnavailableError: If a listener cannot be attached; any
                listener already attached is detached again
        """
        if self._open:
            return
        cid = self.container_id
        listeners: list[tuple[str, dict | None, Callable[[Snapshot], None]]] = [
            (CONTAINERS, {"id": cid}, self._on_container),
            (child_collection_path(cid, SUBCONTAINERS), None, self._on_sub_containers),
            (child_collection_path(cid, ITEMS), None, self._on_items),
            (child_collection_path(cid, MEMBERSHIPS), None, self._on_memberships),
            (child_collection_path(cid, GRANTS), None, self._on_grants),
        ]
        try:
            for collection, where, callback in listeners:
                self._handles.append(await self.store.listen(collection, callback, where))
        except Exception:
            self.close()
            raise
        self._open = True
        logger.debug("Opened container channel", extra={"container_id": cid})

    def close(self) -> None:
        """Detach every listener. Idempotent."""
        for handle in self._handles:
            handle.close()
        self._handles.clear()
        if self._open:
            logger.debug("Closed container channel", extra={"container_id": self.container_id})
        self._open = False

    # Snapshot handlers

    def _on_container(self, snapshot: Snapshot) -> None:
        docs = [d for d in snapshot.items if d.get("id") == self.container_id]
        if snapshot.removed or not docs:
            self.cache.remove_container(self.container_id)
            return
        for entity in parse_entities(EntityKind.CONTAINER, docs[:1]):
            self.cache.put_container(entity)  # type: ignore[arg-type]

    def _on_sub_containers(self, snapshot: Snapshot) -> None:
        docs = [] if snapshot.removed else snapshot.items
        self.cache.replace_children(
            self.container_id, EntityKind.SUBCONTAINER, parse_entities(EntityKind.SUBCONTAINER, docs)
        )

    def _on_items(self, snapshot: Snapshot) -> None:
        docs = [] if snapshot.removed else snapshot.items
        self.cache.replace_children(
            self.container_id, EntityKind.ITEM, parse_entities(EntityKind.ITEM, docs)
        )

    def _on_memberships(self, snapshot: Snapshot) -> None:
        docs = [] if snapshot.removed else snapshot.items
        self.memberships.replace_container(self.container_id, parse_memberships(self.container_id, docs))

    def _on_grants(self, snapshot: Snapshot) -> None:
        docs = [] if snapshot.removed else snapshot.items
        self.grants.replace_container(self.container_id, parse_grants(self.container_id, docs))


class SubscriptionManager:
    """Reference-counted reconciliation of live container channels.

    Thread safety:
        Designed for a single event loop. Counts are mutated synchronously;
        reconcile() is serialised by an asyncio lock.

    Example:
        >>> manager = SubscriptionManager(store, cache, memberships, grants)
        >>> await manager.set_baseline({"c1"})
        >>> await manager.retain("c2")
        >>> manager.subscribed
        frozenset({'c1', 'c2'})
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: LocalCache,
        memberships: MembershipStore,
        grants: GrantStore,
    ) -> None:
        self.store = store
        self.cache = cache
        self.memberships = memberships
        self.grants = grants
        self._baseline: frozenset[str] = frozenset()
        self._counts: dict[str, int] = {}
        self._channels: dict[str, ContainerChannel] = {}
        self._lock = asyncio.Lock()

    @property
    def baseline(self) -> frozenset[str]:
        return self._baseline

    @property
    def desired(self) -> frozenset[str]:
        return self._baseline | {cid for cid, n in self._counts.items() if n > 0}

    @property
    def subscribed(self) -> frozenset[str]:
        return frozenset(self._channels)

    def is_subscribed(self, container_id: str) -> bool:
        return container_id in self._channels

    def ref_count(self, container_id: str) -> int:
        return self._counts.get(container_id, 0)

    async def set_baseline(self, container_ids: set[str] | frozenset[str] | list[str]) -> None:
        """Replace the baseline set and reconcile."""
        self._baseline = frozenset(container_ids)
        await self.reconcile()

    async def retain(self, container_id: str) -> int:
        """Increment a container's ref-count and reconcile.

        Returns:
            The new ref-count
        """
        count = self._counts.get(container_id, 0) + 1
        self._counts[container_id] = count
        await self.reconcile()
        return count

    async def release(self, container_id: str) -> int:
        """Decrement a container's ref-count (never below zero) and reconcile.

        Returns:
            The new ref-count
        """
        count = self._counts.get(container_id, 0)
        if count <= 1:
            self._counts.pop(container_id, None)
            count = 0
        else:
            count -= 1
            self._counts[container_id] = count
        await self.reconcile()
        return count

    async def reconcile(self) -> None:
        """Tear down undesired channels and open missing ones.

        Raises:
            StoreUnavailableError: If a channel cannot be opened; the
                container stays unsubscribed until the next reconcile
        """
        async with self._lock:
            desired = self.desired

            for cid in [c for c in self._channels if c not in desired]:
                self._teardown(cid)

            for cid in sorted(desired):
                if cid in self._channels:
                    continue
                channel = ContainerChannel(cid, self.store, self.cache, self.memberships, self.grants)
                await channel.open()
                self._channels[cid] = channel

    def _teardown(self, container_id: str) -> None:
        channel = self._channels.pop(container_id, None)
        if channel is not None:
            channel.close()
        self.cache.purge_container(container_id)
        self.cache.remove_container(container_id)
        self.memberships.purge_container(container_id)
        self.grants.purge_container(container_id)
        logger.debug("Unsubscribed container", extra={"container_id": container_id})

    async def close(self) -> None:
        """Drop the baseline and every ref-count, tearing down all channels."""
        self._baseline = frozenset()
        self._counts.clear()
        await self.reconcile()
