"""
Per-user session facade.

A VaultSession wires the store, caches, resolver, coordinator, audit log and
subscription manager together for one signed-in user, and is the surface
the UI/API layer calls:
- resolve(), display_role(), capabilities(), require()
- mutate() and the permission-gated lifecycle operations (create, delete,
  move, share, revoke, transfer, record_view)
- record()
- retain() / release()
- load_access() for request-local decisions that leave the caches alone
- read accessors over the cached tree, memberships and grants

Invariants:
    - One session per user; all state hangs off the instance
    - The baseline is every container the user owns, discovered both by
      owner-of-record and by ACTIVE OWNER membership. It is recomputed by
      start(), after every lifecycle operation that can change it, and
      whenever a live query on the owner of record changes
    - An item's sub-container is read from the store when the item is not
      cached, so sub-container grants are never skipped
    - stop() tears down every channel and drains pending audit writes
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .access.grant_store import GrantStore
from .access.membership_store import MembershipStore
from .access.resolver import Capabilities, PermissionResolver
from .audit.log import AuditLog, AuditResult
from .config import VaultSyncConfig
from .errors import AccessDeniedError, NotFoundError, ValidationError, VaultSyncError
from .model.entities import (
    CONTAINERS,
    Container,
    EntityKind,
    EntityRef,
    Item,
    SubContainer,
    container_path,
)
from .model.membership import Membership, PermissionGrant
from .model.permissions import Permission, PermissionSet
from .mutate.coordinator import DeleteResult, MutationCoordinator, MutationResult, TransferResult
from .store.base import DocumentStore, ListenerHandle, Snapshot
from .sync.cache import LocalCache, merge_by_id, parse_entities
from .sync.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

SHARE = "Share"
TRANSFER = "Transfer"


@runtime_checkable
class IdentityProvider(Protocol):
    """Supplies a stable user id for the current session."""

    def current_user_id(self) -> str | None:
        ...


class StaticIdentity:
    """Identity provider returning a fixed user id."""

    def __init__(self, user_id: str | None) -> None:
        self.user_id = user_id

    def current_user_id(self) -> str | None:
        return self.user_id


@dataclass
class ContainerAccess:
    """Access state of one container read fresh from the store.

    Holds its own membership and grant caches, so a decision made through
    it never adds entries to the session caches.

    Attributes:
        container: Container as stored
        memberships: Membership rows of this container only
        grants: Grants of this container only
        resolver: Resolver over the two caches above
    """

    container: Container
    memberships: MembershipStore
    grants: GrantStore
    resolver: PermissionResolver


class VaultSession:
    """Access-control and sync core for one user.

    Example:
        >>> session = VaultSession(store, StaticIdentity("u1"))
        >>> await session.start()
        >>> session.resolve("c1", None, "i1", Permission.EDIT)
        True
        >>> await session.stop()
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityProvider | None = None,
        config: VaultSyncConfig | None = None,
        audit: AuditLog | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            store: Connected document store
            identity: Identity provider; None for multi-user callers that
                pass user ids explicitly
            config: Configuration (defaults for local development)
            audit: Audit log override (tests inject one with a fake clock)
        """
        self.store = store
        self.identity = identity
        self.config = config or VaultSyncConfig()
        self.cache = LocalCache()
        self.memberships = MembershipStore(store)
        self.grants = GrantStore(store)
        self.resolver = PermissionResolver(self.memberships, self.grants, self.cache.owner_of)
        self.audit = audit or AuditLog(store, self.config.audit)
        self.coordinator = MutationCoordinator(
            store,
            self.audit,
            memberships=self.memberships,
            grants=self.grants,
        )
        self.subscriptions = SubscriptionManager(store, self.cache, self.memberships, self.grants)
        self._started = False
        self._owned_handle: ListenerHandle | None = None
        self._owned_by_record: frozenset[str] = frozenset()
        self._refreshes: set[asyncio.Task] = set()

    @property
    def user_id(self) -> str | None:
        return self.identity.current_user_id() if self.identity is not None else None

    def _user(self, user_id: str | None) -> str | None:
        return user_id if user_id is not None else self.user_id

    # Lifecycle

    async def start(self) -> frozenset[str]:
        """Discover owned containers and subscribe them as the baseline.

        Returns:
            The baseline container ids

        Raises:
            ValidationError: If the identity provider yields no user
        """
        baseline = await self.refresh_baseline()
        self._owned_handle = await self.store.listen(
            CONTAINERS, self._on_owned, where={"owner_id": self.user_id}
        )
        self._started = True
        logger.info("Session started", extra={"owned_containers": len(baseline)})
        return baseline

    async def refresh_baseline(self) -> frozenset[str]:
        """Recompute the owned-container set and reconcile subscriptions.

        Raises:
            ValidationError: If the identity provider yields no user
        """
        uid = self.user_id
        if not uid:
            raise ValidationError("No signed-in user", "user_id")

        owned_docs = await self.store.query(CONTAINERS, where={"owner_id": uid})
        via_membership = await self.memberships.owned_container_ids(uid)
        known = {d.get("id") for d in owned_docs}
        for cid in via_membership:
            if cid in known:
                continue
            doc = await self.store.get(container_path(cid))
            if doc is not None:
                owned_docs = merge_by_id(owned_docs, [doc])

        self.cache.merge_containers(parse_entities(EntityKind.CONTAINER, owned_docs))  # type: ignore[arg-type]
        baseline = frozenset(str(d["id"]) for d in owned_docs)
        await self.subscriptions.set_baseline(baseline)
        logger.debug("Baseline refreshed", extra={"owned_containers": len(baseline)})
        return baseline

    async def _baseline_changed(self, user_ids: list[str | None]) -> None:
        """Refresh the baseline when the session's own user is affected."""
        if self._started and self.user_id and self.user_id in user_ids:
            await self.refresh_baseline()

    def _on_owned(self, snapshot: Snapshot) -> None:
        """Owner-of-record changes made by any writer refresh the baseline."""
        owned = frozenset(str(d["id"]) for d in snapshot.items)
        if owned == self._owned_by_record:
            return
        self._owned_by_record = owned
        if not self._started:
            return
        task = asyncio.create_task(self._refresh_in_background())
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    async def _refresh_in_background(self) -> None:
        try:
            await self.refresh_baseline()
        except VaultSyncError as e:
            logger.warning(f"Baseline refresh failed: {e}", extra={"error_code": e.code})

    async def drain(self) -> None:
        """Wait for pending baseline refreshes and audit writes."""
        while self._refreshes:
            await asyncio.gather(*list(self._refreshes))
        await self.coordinator.drain()

    async def stop(self) -> None:
        """Tear down every channel and wait for pending audit writes."""
        self._started = False
        if self._owned_handle is not None:
            self._owned_handle.close()
            self._owned_handle = None
        self._owned_by_record = frozenset()
        await self.drain()
        await self.subscriptions.close()
        logger.info("Session stopped")

    async def shared_container_ids(self, user_id: str | None = None) -> list[str]:
        """Containers shared with the user through an ACTIVE DELEGATE membership."""
        uid = self._user(user_id)
        if not uid:
            return []
        return await self.memberships.delegated_container_ids(uid)

    async def refresh_access(self, container_id: str) -> Container | None:
        """Load a container and its memberships and grants into the session caches.

        Used by a signed-in user that needs an authoritative decision for a
        container that is not subscribed. Multi-user callers use
        load_access() instead.
        """
        doc = await self.store.get(container_path(container_id))
        await self.memberships.fetch(container_id)
        await self.grants.fetch(container_id)
        if doc is None:
            self.cache.remove_container(container_id)
            return None
        container = Container.from_dict(doc)
        self.cache.put_container(container)
        return container

    async def load_access(self, container_id: str) -> ContainerAccess | None:
        """Read a container's access state into request-local caches.

        Returns:
            ContainerAccess, or None when the container does not exist
        """
        doc = await self.store.get(container_path(container_id))
        if doc is None:
            return None
        container = Container.from_dict(doc)
        memberships = MembershipStore(self.store)
        grants = GrantStore(self.store)
        await memberships.fetch(container_id)
        await grants.fetch(container_id)

        def owner_of(cid: str) -> str | None:
            return container.owner_id if cid == container_id else None

        resolver = PermissionResolver(memberships, grants, owner_of)
        return ContainerAccess(container, memberships, grants, resolver)

    # Access

    def resolve(
        self,
        container_id: str,
        sub_container_id: str | None,
        item_id: str | None,
        permission: Permission | str,
        user_id: str | None = None,
    ) -> bool:
        return self.resolver.resolve(
            container_id, sub_container_id, item_id, self._user(user_id), permission
        )

    def require(
        self,
        container_id: str,
        sub_container_id: str | None,
        item_id: str | None,
        permission: Permission | str,
        user_id: str | None = None,
    ) -> None:
        """Raise AccessDeniedError unless the user holds ``permission``."""
        self.resolver.require(
            container_id, sub_container_id, item_id, self._user(user_id), permission
        )

    def display_role(
        self,
        container_id: str,
        sub_container_id: str | None = None,
        item_id: str | None = None,
        user_id: str | None = None,
    ) -> str:
        return self.resolver.display_role(container_id, sub_container_id, item_id, self._user(user_id))

    def capabilities(
        self,
        container_id: str,
        sub_container_id: str | None = None,
        item_id: str | None = None,
        user_id: str | None = None,
    ) -> Capabilities:
        return self.resolver.capabilities(container_id, sub_container_id, item_id, self._user(user_id))

    async def scope_of(self, ref: EntityRef) -> tuple[str | None, str | None]:
        """(sub_container_id, item_id) to resolve against for an entity.

        Raises:
            NotFoundError: If the item is neither cached nor stored
        """
        if ref.kind is EntityKind.ITEM:
            cached = next(
                (i for i in self.cache.items(ref.container_id) if i.id == ref.entity_id), None
            )
            if cached is not None:
                return cached.sub_container_id, ref.entity_id
            doc = await self.store.get(ref.path)
            if doc is None:
                raise NotFoundError(f"ITEM not found: {ref.path}", ref.path)
            return doc.get("sub_container_id"), ref.entity_id
        if ref.kind is EntityKind.SUBCONTAINER:
            return ref.entity_id, None
        return None, None

    async def _require_at(self, ref: EntityRef, permission: Permission, uid: str | None) -> None:
        sub_container_id, item_id = await self.scope_of(ref)
        self.require(ref.container_id, sub_container_id, item_id, permission, uid)

    def _require_share(
        self,
        container_id: str,
        sub_container_id: str | None,
        item_id: str | None,
        uid: str | None,
    ) -> None:
        if not self.capabilities(container_id, sub_container_id, item_id, user_id=uid).can_share:
            raise AccessDeniedError(uid or "", container_id, SHARE, scope_id=item_id or sub_container_id)

    # Mutations

    async def mutate(
        self,
        ref: EntityRef,
        patch: dict[str, Any],
        expected_edited_at: int | None = None,
        user_id: str | None = None,
    ) -> MutationResult:
        """Edit-gated patch.

        Raises:
            AccessDeniedError: If the user lacks Edit at the entity's scope
            NotFoundError, ConflictError: From the coordinator
        """
        uid = self._user(user_id)
        await self._require_at(ref, Permission.EDIT, uid)
        return await self.coordinator.mutate(ref, patch, expected_edited_at, actor_id=uid)

    async def create_container(
        self,
        name: str,
        description: str = "",
        media: list[str] | None = None,
        primary_media: str | None = None,
        container_id: str | None = None,
        user_id: str | None = None,
    ) -> MutationResult:
        """Create a container owned by the user; it joins the baseline."""
        uid = self._user(user_id)
        if not uid:
            raise ValidationError("No signed-in user", "user_id")
        result = await self.coordinator.create_container(
            uid, name, description, media, primary_media, container_id
        )
        await self._baseline_changed([uid])
        return result

    async def create_sub_container(
        self,
        container_id: str,
        name: str,
        description: str = "",
        sub_container_id: str | None = None,
        user_id: str | None = None,
    ) -> MutationResult:
        """Create-gated sub-container creation."""
        uid = self._user(user_id)
        self.require(container_id, None, None, Permission.CREATE, uid)
        return await self.coordinator.create_sub_container(
            uid or "", container_id, name, description, sub_container_id=sub_container_id
        )

    async def create_item(
        self,
        container_id: str,
        name: str,
        sub_container_id: str | None = None,
        description: str = "",
        media: list[str] | None = None,
        primary_media: str | None = None,
        item_id: str | None = None,
        user_id: str | None = None,
    ) -> MutationResult:
        """Create-gated item creation, checked at the target sub-container."""
        uid = self._user(user_id)
        self.require(container_id, sub_container_id, None, Permission.CREATE, uid)
        return await self.coordinator.create_item(
            uid or "",
            container_id,
            name,
            sub_container_id,
            description,
            media,
            primary_media,
            item_id,
        )

    async def delete(self, ref: EntityRef, user_id: str | None = None) -> DeleteResult:
        """Delete-gated cascading delete.

        Deleting an owned container drops it from the baseline.
        """
        uid = self._user(user_id)
        await self._require_at(ref, Permission.DELETE, uid)
        result = await self.coordinator.delete(ref, actor_id=uid)
        if ref.kind is EntityKind.CONTAINER:
            await self._baseline_changed([uid])
        return result

    async def move_item(
        self,
        container_id: str,
        item_id: str,
        target_container_id: str,
        target_sub_container_id: str | None = None,
        expected_edited_at: int | None = None,
        user_id: str | None = None,
    ) -> MutationResult:
        """Move an item: Move at the source, Create at the target."""
        uid = self._user(user_id)
        await self._require_at(EntityRef.item(container_id, item_id), Permission.MOVE, uid)
        self.require(target_container_id, target_sub_container_id, None, Permission.CREATE, uid)
        return await self.coordinator.move_item(
            uid,
            container_id,
            item_id,
            target_container_id,
            target_sub_container_id,
            expected_edited_at,
        )

    async def move_sub_container(
        self,
        container_id: str,
        sub_container_id: str,
        target_container_id: str,
        expected_edited_at: int | None = None,
        user_id: str | None = None,
    ) -> MutationResult:
        """Move a sub-container: Move at the source, Create at the target."""
        uid = self._user(user_id)
        self.require(container_id, sub_container_id, None, Permission.MOVE, uid)
        self.require(target_container_id, None, None, Permission.CREATE, uid)
        return await self.coordinator.move_sub_container(
            uid, container_id, sub_container_id, target_container_id, expected_edited_at
        )

    async def share(
        self,
        container_id: str,
        grantee_id: str,
        permissions: PermissionSet | dict[str, Any] | None = None,
        role: str | None = None,
        may_create: bool = False,
        sub_container_id: str | None = None,
        item_id: str | None = None,
        user_id: str | None = None,
    ) -> Membership | PermissionGrant:
        """Share a scope with ``grantee_id``; gated on the can_share capability."""
        uid = self._user(user_id)
        self._require_share(container_id, sub_container_id, item_id, uid)
        return await self.coordinator.share(
            uid,
            container_id,
            grantee_id,
            permissions,
            role,
            may_create,
            sub_container_id,
            item_id,
        )

    async def revoke_share(
        self,
        container_id: str,
        grantee_id: str,
        sub_container_id: str | None = None,
        item_id: str | None = None,
        user_id: str | None = None,
    ) -> None:
        """Revoke a share; gated on the can_share capability."""
        uid = self._user(user_id)
        self._require_share(container_id, sub_container_id, item_id, uid)
        await self.coordinator.revoke_share(uid, container_id, grantee_id, sub_container_id, item_id)

    async def transfer_ownership(
        self,
        container_id: str,
        to_user_id: str,
        user_id: str | None = None,
    ) -> TransferResult:
        """Hand an owned container to another user.

        Both users' baselines may change; this session's is refreshed when
        its user is either side of the transfer.

        Raises:
            AccessDeniedError: If the acting user does not own the container
        """
        uid = self._user(user_id)
        if not self.resolver.is_owner(container_id, uid):
            raise AccessDeniedError(uid or "", container_id, TRANSFER)
        result = await self.coordinator.transfer_ownership(
            container_id, uid or "", to_user_id, actor_id=uid
        )
        await self._baseline_changed([uid, to_user_id])
        return result

    async def record_view(self, ref: EntityRef, user_id: str | None = None) -> MutationResult:
        """View-gated viewed_at stamp."""
        uid = self._user(user_id)
        await self._require_at(ref, Permission.VIEW, uid)
        return await self.coordinator.record_view(ref, actor_id=uid)

    async def record(
        self,
        container_id: str,
        event_type: str,
        payload: Any = None,
        user_id: str | None = None,
    ) -> AuditResult:
        return await self.audit.record(container_id, event_type, self._user(user_id), payload)

    # Subscriptions

    async def retain(self, container_id: str) -> int:
        return await self.subscriptions.retain(container_id)

    async def release(self, container_id: str) -> int:
        return await self.subscriptions.release(container_id)

    # Read accessors

    def containers(self) -> list[Container]:
        return self.cache.containers()

    def container(self, container_id: str) -> Container | None:
        return self.cache.container(container_id)

    def sub_containers(self, container_id: str) -> list[SubContainer]:
        return self.cache.sub_containers(container_id)

    def items(self, container_id: str, sub_container_id: str | None = None) -> list[Item]:
        return self.cache.items(container_id, sub_container_id)

    def memberships_for(self, container_id: str) -> list[Membership]:
        return self.memberships.for_container(container_id)

    def grants_for(self, container_id: str) -> list[PermissionGrant]:
        return self.grants.for_container(container_id)

