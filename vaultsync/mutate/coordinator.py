"""
Mutation coordinator for the resource tree.

The MutationCoordinator applies caller intents to the document store. It
ensures:
- Patches run as one atomic read-modify-write under optimistic concurrency
- Names are clamped and protected fields are never caller-writable
- A field-level diff of each successful patch reaches the audit log
- Lifecycle writes (create, delete, move, share, transfer) are atomic
  and read the child sets they cascade over inside the same transaction

Invariants:
    - Permissions are NOT checked here; callers gate on PermissionResolver
    - A ConflictError is terminal and never retried internally
    - edited_at strictly increases on every successful patch
    - Audit emission is fire-and-forget and happens only after the write
      succeeded; its failure never affects the mutation result

How to change safely:
    - New patchable fields need nothing here; new protected fields go in
      PROTECTED_FIELDS
    - Every new lifecycle operation must emit an allow-listed event type
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from ..access.grant_store import GrantStore, grant_path
from ..access.membership_store import MembershipStore, membership_path, parse_memberships
from ..audit.log import AuditLog, AuditResult
from ..errors import ConflictError, NotFoundError, ValidationError
from ..model.entities import (
    GRANTS,
    ITEMS,
    MEMBERSHIPS,
    SUBCONTAINERS,
    Container,
    EntityKind,
    EntityRef,
    Item,
    SubContainer,
    child_collection_path,
    clamp_name,
    container_path,
    normalize_media,
    now_ms,
)
from ..model.membership import (
    Membership,
    MembershipRole,
    MembershipStatus,
    PermissionGrant,
    ScopeType,
    grant_id,
)
from ..model.permissions import PermissionSet
from ..store.base import DocumentStore, Transaction
from .diff import diff_for_update

logger = logging.getLogger(__name__)

# Fields a caller patch may never set
PROTECTED_FIELDS = frozenset(
    {
        "id",
        "created_at",
        "edited_at",
        "viewed_at",
        "owner_id",
        "container_id",
        "sub_container_id",
        "createdAt",
        "editedAt",
        "viewedAt",
    }
)

_ID_KEYS = {
    EntityKind.CONTAINER: "container_id",
    EntityKind.SUBCONTAINER: "sub_container_id",
    EntityKind.ITEM: "item_id",
}


@dataclass
class MutationResult:
    """Result of a successful write to one entity.

    Attributes:
        ref: Entity written
        document: Post-image as stored
        edited_at: edited_at after the write
        previous_edited_at: edited_at before the write (None on create)
        changes: Field-level diff recorded for audit
    """

    ref: EntityRef
    document: dict[str, Any]
    edited_at: int
    previous_edited_at: int | None = None
    changes: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class DeleteResult:
    """Result of a cascading delete.

    Attributes:
        ref: Entity requested for deletion
        deleted_paths: Every document path removed by the batch
    """

    ref: EntityRef
    deleted_paths: list[str] = field(default_factory=list)


@dataclass
class TransferResult:
    """Result of an ownership transfer."""

    container_id: str
    previous_owner: Membership
    new_owner: Membership


def _scope(sub_container_id: str | None, item_id: str | None) -> tuple[EntityKind, ScopeType | None, str | None]:
    if item_id:
        return EntityKind.ITEM, ScopeType.ITEM, item_id
    if sub_container_id:
        return EntityKind.SUBCONTAINER, ScopeType.SUBCONTAINER, sub_container_id
    return EntityKind.CONTAINER, None, None


def _coerce_permissions(
    permissions: PermissionSet | dict[str, Any] | None,
    role: str | None,
    may_create: bool,
) -> PermissionSet:
    if isinstance(permissions, PermissionSet):
        return permissions
    if isinstance(permissions, dict):
        return PermissionSet.from_dict(permissions)
    if role is not None:
        return PermissionSet.from_role(role, may_create)
    return PermissionSet.view_only()


class MutationCoordinator:
    """Applies patches and lifecycle operations to the resource tree.

    Thread safety:
        Stateless apart from the caches it updates; every store write is
        atomic on its own.

    Example:
        >>> coordinator = MutationCoordinator(store, audit)
        >>> result = await coordinator.mutate(
        ...     EntityRef.item("c1", "i1"), {"name": "Lamp"}, expected_edited_at=1700000000000
        ... )
        >>> result.changes
        {'name': {'from': 'Lamp (old)', 'to': 'Lamp'}}
    """

    def __init__(
        self,
        store: DocumentStore,
        audit: AuditLog | None = None,
        memberships: MembershipStore | None = None,
        grants: GrantStore | None = None,
        clock: Callable[[], int] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Authoritative document store
            audit: Audit log for lifecycle events (None disables auditing)
            memberships: Membership cache to keep current after writes
            grants: Grant cache to keep current after writes
            clock: Millisecond clock, injectable for tests
            id_factory: Generates ids for created entities
        """
        self.store = store
        self.audit = audit
        self.memberships = memberships or MembershipStore(store)
        self.grants = grants or GrantStore(store)
        self._clock = clock or now_ms
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)

    # Audit helpers

    def _emit(
        self,
        container_id: str,
        event_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        if self.audit is None:
            return
        self.audit.emit(container_id, event_type, actor_id, payload)

    @staticmethod
    def _payload(ref: EntityRef, **extra: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {"container_id": ref.container_id}
        if ref.kind is not EntityKind.CONTAINER:
            payload[_ID_KEYS[ref.kind]] = ref.entity_id
        payload.update(extra)
        return payload

    async def drain(self) -> list[AuditResult]:
        """Wait for in-flight audit emissions (shutdown and tests)."""
        if self.audit is None:
            return []
        return await self.audit.drain()

    # Patch

    @staticmethod
    def clean_patch(patch: dict[str, Any]) -> dict[str, Any]:
        """Strip protected fields and clamp names.

        ``title`` is accepted as a legacy alias of ``name``.

        Raises:
            ValidationError: If the patch is not a mapping or is empty
                once protected fields are removed
        """
        if not isinstance(patch, dict):
            raise ValidationError("Patch must be an object", "patch")
        clean = {k: v for k, v in patch.items() if k not in PROTECTED_FIELDS}
        if "title" in clean:
            title = clean.pop("title")
            clean.setdefault("name", title)
        if "name" in clean:
            clean["name"] = clamp_name(clean["name"])
        if "media" in clean and clean["media"] is not None and not isinstance(clean["media"], list):
            raise ValidationError("media must be a list", "media")
        if not clean:
            raise ValidationError("Patch has no writable fields", "patch")
        return clean

    async def mutate(
        self,
        ref: EntityRef,
        patch: dict[str, Any],
        expected_edited_at: int | None = None,
        actor_id: str | None = None,
    ) -> MutationResult:
        """Apply a patch under optimistic concurrency.

        Args:
            ref: Entity to patch
            patch: Fields to change
            expected_edited_at: edited_at the caller last saw; None skips the check
            actor_id: Acting user, recorded in the audit event

        Returns:
            MutationResult with the field-level diff

        Raises:
            NotFoundError: If the entity does not exist
            ConflictError: If expected_edited_at differs from the current value
            ValidationError: If the patch has no writable fields
            StoreUnavailableError: On transport failure
        """
        clean = self.clean_patch(patch)
        keys = list(clean)
        if "media" in clean or "primary_media" in clean:
            keys.extend(k for k in ("media", "primary_media") if k not in clean)

        async def apply(tx: Transaction) -> MutationResult:
            current = await tx.get(ref.path)
            if current is None:
                raise NotFoundError(f"{ref.kind.value} not found: {ref.path}", ref.path)
            current_edited_at = current.get("edited_at")
            if expected_edited_at is not None and current_edited_at != expected_edited_at:
                raise ConflictError(ref.path, expected_edited_at, current_edited_at)

            merged = dict(current)
            merged.update(clean)
            if "media" in clean or "primary_media" in clean:
                merged["media"], merged["primary_media"] = normalize_media(
                    merged.get("media"), merged.get("primary_media")
                )
            edited_at = max(self._clock(), int(current_edited_at or 0) + 1)
            merged["edited_at"] = edited_at
            tx.set(ref.path, merged)
            return MutationResult(
                ref=ref,
                document=merged,
                edited_at=edited_at,
                previous_edited_at=current_edited_at,
                changes=diff_for_update(current, merged, keys),
            )

        result = await self.store.run_transaction(apply)
        logger.debug(
            "Applied patch",
            extra={"path": ref.path, "fields": keys, "edited_at": result.edited_at},
        )
        if result.changes:
            self._emit(
                ref.container_id,
                f"{ref.kind.value}_UPDATED",
                actor_id,
                self._payload(ref, changes=result.changes),
            )
        return result

    # Create

    async def create_container(
        self,
        actor_id: str,
        name: str,
        description: str = "",
        media: list[str] | None = None,
        primary_media: str | None = None,
        container_id: str | None = None,
    ) -> MutationResult:
        """Create a container and its creator's OWNER membership atomically.

        Raises:
            ValidationError: If actor_id is empty or the id is taken
        """
        if not actor_id:
            raise ValidationError("actor_id is required", "actor_id")
        cid = container_id or self._new_id()
        now = self._clock()
        container = Container(
            id=cid,
            name=name,
            description=description,
            media=list(media or []),
            primary_media=primary_media,
            created_at=now,
            viewed_at=now,
            edited_at=now,
            owner_id=actor_id,
        )
        owner = Membership.owner(cid, actor_id, now)
        ref = container.ref()

        async def apply(tx: Transaction) -> None:
            if await tx.get(ref.path) is not None:
                raise ValidationError(f"Container already exists: {cid}", "id")
            tx.set(ref.path, container.to_dict())
            tx.set(membership_path(cid, actor_id), owner.to_dict())

        await self.store.run_transaction(apply)
        self.memberships.upsert(owner)
        logger.info("Created container", extra={"container_id": cid})
        self._emit(cid, "CONTAINER_CREATED", actor_id, self._payload(ref, name=container.name))
        return MutationResult(ref=ref, document=container.to_dict(), edited_at=now)

    async def create_sub_container(
        self,
        actor_id: str,
        container_id: str,
        name: str,
        description: str = "",
        media: list[str] | None = None,
        primary_media: str | None = None,
        sub_container_id: str | None = None,
    ) -> MutationResult:
        """Create a sub-container inside an existing container.

        Raises:
            NotFoundError: If the container does not exist
        """
        now = self._clock()
        sub = SubContainer(
            id=sub_container_id or self._new_id(),
            container_id=container_id,
            name=name,
            description=description,
            media=list(media or []),
            primary_media=primary_media,
            created_at=now,
            viewed_at=now,
            edited_at=now,
        )
        ref = sub.ref()

        async def apply(tx: Transaction) -> dict[str, Any]:
            parent = await tx.get(container_path(container_id))
            if parent is None:
                raise NotFoundError(f"Container not found: {container_id}", container_path(container_id))
            if await tx.get(ref.path) is not None:
                raise ValidationError(f"Sub-container already exists: {sub.id}", "id")
            sub.owner_id = parent.get("owner_id")
            doc = sub.to_dict()
            tx.set(ref.path, doc)
            return doc

        doc = await self.store.run_transaction(apply)
        self._emit(container_id, "SUBCONTAINER_CREATED", actor_id, self._payload(ref, name=sub.name))
        return MutationResult(ref=ref, document=doc, edited_at=now)

    async def create_item(
        self,
        actor_id: str,
        container_id: str,
        name: str,
        sub_container_id: str | None = None,
        description: str = "",
        media: list[str] | None = None,
        primary_media: str | None = None,
        item_id: str | None = None,
    ) -> MutationResult:
        """Create an item in a container, optionally inside a sub-container.

        Raises:
            NotFoundError: If the container or sub-container does not exist
        """
        now = self._clock()
        item = Item(
            id=item_id or self._new_id(),
            container_id=container_id,
            sub_container_id=sub_container_id,
            name=name,
            description=description,
            media=list(media or []),
            primary_media=primary_media,
            created_at=now,
            viewed_at=now,
            edited_at=now,
        )
        ref = item.ref()

        async def apply(tx: Transaction) -> dict[str, Any]:
            parent = await tx.get(container_path(container_id))
            if parent is None:
                raise NotFoundError(f"Container not found: {container_id}", container_path(container_id))
            if sub_container_id:
                sub_path = EntityRef.sub_container(container_id, sub_container_id).path
                if await tx.get(sub_path) is None:
                    raise NotFoundError(f"Sub-container not found: {sub_container_id}", sub_path)
            if await tx.get(ref.path) is not None:
                raise ValidationError(f"Item already exists: {item.id}", "id")
            item.owner_id = parent.get("owner_id")
            doc = item.to_dict()
            tx.set(ref.path, doc)
            return doc

        doc = await self.store.run_transaction(apply)
        self._emit(
            container_id,
            "ITEM_CREATED",
            actor_id,
            self._payload(ref, sub_container_id=sub_container_id, name=item.name),
        )
        return MutationResult(ref=ref, document=doc, edited_at=now)

    # Delete

    @staticmethod
    async def _grant_docs(
        tx: Transaction,
        container_id: str,
        scope_type: ScopeType,
        scope_ids: list[str],
    ) -> list[dict[str, Any]]:
        if not scope_ids:
            return []
        docs = await tx.query(
            child_collection_path(container_id, GRANTS),
            where={"scope_type": scope_type.value},
        )
        wanted = set(scope_ids)
        return [d for d in docs if d.get("scope_id") in wanted]

    async def delete(self, ref: EntityRef, actor_id: str | None = None) -> DeleteResult:
        """Delete an entity and everything beneath it in one transaction.

        Children, grants and memberships are read inside the transaction,
        so a child written concurrently is either deleted with its parent
        or was committed after the delete.

        Container deletes also revoke every membership; membership rows
        themselves are kept.

        Raises:
            NotFoundError: If the entity does not exist
        """
        cid = ref.container_id

        async def apply(
            tx: Transaction,
        ) -> tuple[dict[str, Any], list[str], list[dict[str, Any]], list[Membership]]:
            current = await tx.get(ref.path)
            if current is None:
                raise NotFoundError(f"{ref.kind.value} not found: {ref.path}", ref.path)
            paths: list[str] = []
            grant_docs: list[dict[str, Any]] = []
            revoked: list[Membership] = []

            if ref.kind is EntityKind.CONTAINER:
                for collection in (SUBCONTAINERS, ITEMS):
                    docs = await tx.query(child_collection_path(cid, collection))
                    paths.extend(f"{child_collection_path(cid, collection)}/{d['id']}" for d in docs)
                grant_docs = await tx.query(child_collection_path(cid, GRANTS))
                now = self._clock()
                rows = parse_memberships(cid, await tx.query(child_collection_path(cid, MEMBERSHIPS)))
                revoked = [
                    replace(m, status=MembershipStatus.REVOKED, revoked_at=now)
                    for m in rows
                    if m.is_active
                ]
                for m in revoked:
                    tx.set(membership_path(cid, m.user_id), m.to_dict())
            elif ref.kind is EntityKind.SUBCONTAINER:
                items = await tx.query(
                    child_collection_path(cid, ITEMS),
                    where={"sub_container_id": ref.entity_id},
                )
                item_ids = [str(d["id"]) for d in items]
                paths.extend(EntityRef.item(cid, i).path for i in item_ids)
                grant_docs = await self._grant_docs(tx, cid, ScopeType.SUBCONTAINER, [ref.entity_id])
                grant_docs += await self._grant_docs(tx, cid, ScopeType.ITEM, item_ids)
            else:
                grant_docs = await self._grant_docs(tx, cid, ScopeType.ITEM, [ref.entity_id])

            paths.extend(grant_path(cid, str(d["id"])) for d in grant_docs)
            # Parent document last so listeners see children go first
            paths.append(ref.path)
            for path in paths:
                tx.delete(path)
            return current, paths, grant_docs, revoked

        current, paths, grant_docs, revoked = await self.store.run_transaction(apply)

        for m in revoked:
            self.memberships.upsert(m)
        self._discard_grants(cid, grant_docs)

        logger.info(
            "Deleted entity",
            extra={"path": ref.path, "cascade": len(paths) - 1, "revoked": len(revoked)},
        )
        self._emit(
            cid,
            f"{ref.kind.value}_DELETE_REQUESTED",
            actor_id,
            self._payload(ref, name=current.get("name")),
        )
        return DeleteResult(ref=ref, deleted_paths=paths)

    def _discard_grants(self, container_id: str, grant_docs: list[dict[str, Any]]) -> None:
        for d in grant_docs:
            try:
                self.grants.discard(PermissionGrant.from_dict({"container_id": container_id, **d}))
            except (KeyError, ValueError):
                continue

    # Move

    async def move_item(
        self,
        actor_id: str | None,
        container_id: str,
        item_id: str,
        target_container_id: str,
        target_sub_container_id: str | None = None,
        expected_edited_at: int | None = None,
    ) -> MutationResult:
        """Re-home an item.

        Within one container this is a patch of sub_container_id and emits
        ITEM_UPDATED. Across containers the item is re-created under the
        target, its grants are dropped, and ITEM_MOVED_OUT / ITEM_MOVED_IN
        are emitted against the source and target containers.

        Raises:
            NotFoundError: If the item or a target parent does not exist
            ConflictError: If expected_edited_at differs from the current value
        """
        src = EntityRef.item(container_id, item_id)
        dst = EntityRef.item(target_container_id, item_id)
        cross = target_container_id != container_id
        grant_docs: list[dict[str, Any]] = []

        async def apply(tx: Transaction) -> MutationResult:
            current = await tx.get(src.path)
            if current is None:
                raise NotFoundError(f"ITEM not found: {src.path}", src.path)
            current_edited_at = current.get("edited_at")
            if expected_edited_at is not None and current_edited_at != expected_edited_at:
                raise ConflictError(src.path, expected_edited_at, current_edited_at)

            target = await tx.get(container_path(target_container_id))
            if target is None:
                raise NotFoundError(
                    f"Container not found: {target_container_id}",
                    container_path(target_container_id),
                )
            if target_sub_container_id:
                sub_path = EntityRef.sub_container(target_container_id, target_sub_container_id).path
                if await tx.get(sub_path) is None:
                    raise NotFoundError(f"Sub-container not found: {target_sub_container_id}", sub_path)

            moved = dict(current)
            moved["container_id"] = target_container_id
            moved["sub_container_id"] = target_sub_container_id
            moved["owner_id"] = target.get("owner_id")
            moved["edited_at"] = max(self._clock(), int(current_edited_at or 0) + 1)
            if cross:
                grant_docs[:] = await self._grant_docs(tx, container_id, ScopeType.ITEM, [item_id])
                tx.delete(src.path)
                for d in grant_docs:
                    tx.delete(grant_path(container_id, str(d["id"])))
            tx.set(dst.path, moved)
            return MutationResult(
                ref=dst,
                document=moved,
                edited_at=moved["edited_at"],
                previous_edited_at=current_edited_at,
                changes=diff_for_update(current, moved, ["container_id", "sub_container_id"]),
            )

        result = await self.store.run_transaction(apply)

        if not cross:
            if result.changes:
                self._emit(
                    container_id,
                    "ITEM_UPDATED",
                    actor_id,
                    self._payload(src, changes=result.changes),
                )
            return result

        self._discard_grants(container_id, grant_docs)
        self._emit(
            container_id,
            "ITEM_MOVED_OUT",
            actor_id,
            self._payload(src, to_container_id=target_container_id),
        )
        self._emit(
            target_container_id,
            "ITEM_MOVED_IN",
            actor_id,
            self._payload(
                dst,
                from_container_id=container_id,
                sub_container_id=target_sub_container_id,
            ),
        )
        return result

    async def move_sub_container(
        self,
        actor_id: str | None,
        container_id: str,
        sub_container_id: str,
        target_container_id: str,
        expected_edited_at: int | None = None,
    ) -> MutationResult:
        """Re-home a sub-container and its items into another container.

        The item set is read inside the transaction, so no item committed
        before the move is left behind in the source container. Grants at
        the sub-container and its items are dropped.

        Raises:
            ValidationError: If the target is the current container
            NotFoundError: If the sub-container or target container does not exist
            ConflictError: If expected_edited_at differs from the current value
        """
        if target_container_id == container_id:
            raise ValidationError("Sub-container is already in the target container", "target_container_id")

        src = EntityRef.sub_container(container_id, sub_container_id)
        dst = EntityRef.sub_container(target_container_id, sub_container_id)
        grant_docs: list[dict[str, Any]] = []
        item_ids: list[str] = []

        async def apply(tx: Transaction) -> MutationResult:
            current = await tx.get(src.path)
            if current is None:
                raise NotFoundError(f"SUBCONTAINER not found: {src.path}", src.path)
            current_edited_at = current.get("edited_at")
            if expected_edited_at is not None and current_edited_at != expected_edited_at:
                raise ConflictError(src.path, expected_edited_at, current_edited_at)
            target = await tx.get(container_path(target_container_id))
            if target is None:
                raise NotFoundError(
                    f"Container not found: {target_container_id}",
                    container_path(target_container_id),
                )

            items = await tx.query(
                child_collection_path(container_id, ITEMS),
                where={"sub_container_id": sub_container_id},
            )
            item_ids[:] = [str(d["id"]) for d in items]
            grant_docs[:] = await self._grant_docs(tx, container_id, ScopeType.SUBCONTAINER, [sub_container_id])
            grant_docs.extend(await self._grant_docs(tx, container_id, ScopeType.ITEM, item_ids))

            owner_id = target.get("owner_id")
            edited_at = max(self._clock(), int(current_edited_at or 0) + 1)
            moved = {**current, "container_id": target_container_id, "owner_id": owner_id, "edited_at": edited_at}
            tx.delete(src.path)
            tx.set(dst.path, moved)
            for item_doc in items:
                item_id = str(item_doc["id"])
                tx.delete(EntityRef.item(container_id, item_id).path)
                tx.set(
                    EntityRef.item(target_container_id, item_id).path,
                    {**item_doc, "container_id": target_container_id, "owner_id": owner_id},
                )
            for d in grant_docs:
                tx.delete(grant_path(container_id, str(d["id"])))
            return MutationResult(
                ref=dst,
                document=moved,
                edited_at=edited_at,
                previous_edited_at=current_edited_at,
            )

        result = await self.store.run_transaction(apply)
        self._discard_grants(container_id, grant_docs)

        self._emit(
            container_id,
            "SUBCONTAINER_MOVED_OUT",
            actor_id,
            self._payload(src, to_container_id=target_container_id, item_count=len(item_ids)),
        )
        self._emit(
            target_container_id,
            "SUBCONTAINER_MOVED_IN",
            actor_id,
            self._payload(dst, from_container_id=container_id, item_count=len(item_ids)),
        )
        return result

    # Views

    async def record_view(self, ref: EntityRef, actor_id: str | None = None) -> MutationResult:
        """Stamp viewed_at and emit a view event. edited_at is untouched.

        Raises:
            NotFoundError: If the entity does not exist
        """

        async def apply(tx: Transaction) -> MutationResult:
            current = await tx.get(ref.path)
            if current is None:
                raise NotFoundError(f"{ref.kind.value} not found: {ref.path}", ref.path)
            viewed_at = self._clock()
            tx.set(ref.path, {"viewed_at": viewed_at}, merge=True)
            return MutationResult(
                ref=ref,
                document={**current, "viewed_at": viewed_at},
                edited_at=int(current.get("edited_at") or 0),
                previous_edited_at=current.get("edited_at"),
            )

        result = await self.store.run_transaction(apply)
        self._emit(ref.container_id, f"{ref.kind.value}_VIEWED", actor_id, self._payload(ref))
        return result

    # Sharing

    async def _require_scope(self, container_id: str, sub_container_id: str | None, item_id: str | None) -> None:
        paths = [container_path(container_id)]
        if sub_container_id:
            paths.append(EntityRef.sub_container(container_id, sub_container_id).path)
        if item_id:
            paths.append(EntityRef.item(container_id, item_id).path)
        for path in paths:
            if await self.store.get(path) is None:
                raise NotFoundError(f"Not found: {path}", path)

    async def share(
        self,
        actor_id: str | None,
        container_id: str,
        user_id: str,
        permissions: PermissionSet | dict[str, Any] | None = None,
        role: str | None = None,
        may_create: bool = False,
        sub_container_id: str | None = None,
        item_id: str | None = None,
    ) -> Membership | PermissionGrant:
        """Share a container (DELEGATE membership) or a narrower scope (grant).

        Either raw ``permissions`` or a legacy ``role`` plus ``may_create``
        flag may be given; with neither the share is View-only.

        Raises:
            ValidationError: If user_id is empty or already owns the container
            NotFoundError: If the shared entity does not exist
        """
        if not user_id:
            raise ValidationError("user_id is required", "user_id")
        perms = _coerce_permissions(permissions, role, may_create)
        kind, scope_type, scope_id = _scope(sub_container_id, item_id)
        await self._require_scope(container_id, sub_container_id, item_id)
        now = self._clock()

        record: Membership | PermissionGrant
        if scope_type is None:
            existing = await self.store.get(membership_path(container_id, user_id))
            if existing is not None and Membership.from_dict(
                {"container_id": container_id, **existing}
            ).is_active_owner:
                raise ValidationError(f"{user_id} already owns {container_id}", "user_id")
            record = await self.memberships.save(
                Membership.delegate(container_id, user_id, perms, now)
            )
        else:
            record = await self.grants.save(
                PermissionGrant(user_id, container_id, scope_type, scope_id or "", perms, now)
            )

        ref = EntityRef(kind, container_id, scope_id or container_id)
        self._emit(
            container_id,
            f"{kind.value}_SHARED",
            actor_id,
            self._payload(ref, user_id=user_id, permissions=perms.to_dict()),
        )
        return record

    async def revoke_share(
        self,
        actor_id: str | None,
        container_id: str,
        user_id: str,
        sub_container_id: str | None = None,
        item_id: str | None = None,
    ) -> None:
        """Revoke a share: memberships become REVOKED, grants are deleted.

        Raises:
            NotFoundError: If there is nothing to revoke
            ValidationError: If the user is an owner (transfer ownership instead)
        """
        kind, scope_type, scope_id = _scope(sub_container_id, item_id)
        now = self._clock()

        if scope_type is None:
            doc = await self.store.get(membership_path(container_id, user_id))
            if doc is None:
                path = membership_path(container_id, user_id)
                raise NotFoundError(f"Membership not found: {path}", path)
            if Membership.from_dict({"container_id": container_id, **doc}).role is MembershipRole.OWNER:
                raise ValidationError("Owners cannot be revoked; transfer ownership first", "user_id")
            await self.memberships.revoke(container_id, user_id, now)
        else:
            gid = grant_id(scope_type, scope_id or "", user_id)
            grant = await self.grants.load(container_id, gid)
            if grant is None:
                path = grant_path(container_id, gid)
                raise NotFoundError(f"Grant not found: {path}", path)
            await self.grants.remove(grant)

        ref = EntityRef(kind, container_id, scope_id or container_id)
        self._emit(
            container_id,
            f"{kind.value}_SHARE_REVOKED",
            actor_id,
            self._payload(ref, user_id=user_id),
        )

    async def transfer_ownership(
        self,
        container_id: str,
        from_user_id: str,
        to_user_id: str,
        actor_id: str | None = None,
    ) -> TransferResult:
        """Hand a container to another user in one atomic batch.

        The previous owner is demoted to DELEGATE with the full permission
        set, the new owner gets an OWNER row, and the container's owner of
        record changes.

        Raises:
            ValidationError: If from and to are the same user or from is not an owner
            NotFoundError: If the container does not exist
        """
        if not to_user_id or to_user_id == from_user_id:
            raise ValidationError("Ownership must move to a different user", "to_user_id")
        cpath = container_path(container_id)

        async def apply(tx: Transaction) -> TransferResult:
            container = await tx.get(cpath)
            if container is None:
                raise NotFoundError(f"Container not found: {container_id}", cpath)
            doc = await tx.get(membership_path(container_id, from_user_id))
            current = Membership.from_dict({"container_id": container_id, **doc}) if doc else None
            is_owner = container.get("owner_id") == from_user_id or (
                current is not None and current.is_active_owner
            )
            if not is_owner:
                raise ValidationError(f"{from_user_id} does not own {container_id}", "from_user_id")

            now = self._clock()
            demoted = Membership.delegate(container_id, from_user_id, PermissionSet.full(), now)
            promoted = Membership.owner(container_id, to_user_id, now)
            tx.set(membership_path(container_id, from_user_id), demoted.to_dict())
            tx.set(membership_path(container_id, to_user_id), promoted.to_dict())
            tx.set(cpath, {"owner_id": to_user_id}, merge=True)
            return TransferResult(container_id, demoted, promoted)

        result = await self.store.run_transaction(apply)
        self.memberships.upsert(result.previous_owner)
        self.memberships.upsert(result.new_owner)
        logger.info(
            "Transferred ownership",
            extra={"container_id": container_id, "from_user_id": from_user_id, "to_user_id": to_user_id},
        )
        self._emit(
            container_id,
            "CONTAINER_OWNERSHIP_TRANSFERRED",
            actor_id,
            self._payload(
                EntityRef.container(container_id),
                from_user_id=from_user_id,
                to_user_id=to_user_id,
            ),
        )
        return result
