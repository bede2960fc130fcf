"""
Unit tests for the mutation coordinator.

Tests cover:
- Optimistic concurrency and strictly increasing edited_at
- Patch cleaning (clamping, protected fields, legacy aliases)
- Cascading deletes and moves
- Sharing, revocation and ownership transfer
- Audit failures never affecting mutations
"""

import pytest

from vaultsync.audit.log import AuditLog
from vaultsync.errors import ConflictError, NotFoundError, ValidationError
from vaultsync.model.entities import NAME_MAX_LENGTH, EntityRef
from vaultsync.model.membership import (
    Membership,
    MembershipRole,
    MembershipStatus,
    PermissionGrant,
    ScopeType,
)
from vaultsync.model.permissions import PermissionSet
from vaultsync.mutate.coordinator import MutationCoordinator
from vaultsync.store.memory import InMemoryDocumentStore


@pytest.fixture
def audit(store, clock):
    return AuditLog(store, clock=clock)


@pytest.fixture
def coordinator(store, audit, clock):
    return MutationCoordinator(store, audit, clock=clock)


@pytest.fixture
async def tree(coordinator, clock):
    """Container c1 owned by "owner" with sub-container s1 and items i1 (loose), i2 (in s1)."""
    await coordinator.create_container("owner", "Home", container_id="c1")
    await coordinator.create_sub_container("owner", "c1", "Kitchen", sub_container_id="s1")
    await coordinator.create_item("owner", "c1", "Lamp", item_id="i1")
    await coordinator.create_item("owner", "c1", "Kettle", sub_container_id="s1", item_id="i2")
    await coordinator.drain()
    clock.advance(1000)
    return coordinator


async def event_types(audit, container_id):
    return [e.type for e in await audit.events(container_id, limit=None)]


def write_before_commit(monkeypatch, store, path, data):
    """Commit ``path`` from another writer just before the next transaction starts."""
    original = store.run_transaction

    async def racing(fn):
        monkeypatch.setattr(store, "run_transaction", original)
        await store.set(path, data)
        return await original(fn)

    monkeypatch.setattr(store, "run_transaction", racing)


class TestCreate:
    """Tests for create operations."""

    @pytest.mark.asyncio
    async def test_create_container_writes_owner_membership(self, coordinator, store, clock):
        result = await coordinator.create_container("u1", "Home", container_id="c1")

        assert result.document["owner_id"] == "u1"
        assert result.edited_at == clock.now
        row = await store.get("containers/c1/memberships/u1")
        assert row["role"] == "OWNER"
        assert row["status"] == "ACTIVE"
        assert coordinator.memberships.get("c1", "u1").is_active_owner

    @pytest.mark.asyncio
    async def test_create_container_twice(self, coordinator):
        await coordinator.create_container("u1", "Home", container_id="c1")
        with pytest.raises(ValidationError):
            await coordinator.create_container("u1", "Other", container_id="c1")

    @pytest.mark.asyncio
    async def test_children_inherit_owner(self, tree, store):
        assert (await store.get("containers/c1/items/i2"))["owner_id"] == "owner"
        assert (await store.get("containers/c1/subcontainers/s1"))["owner_id"] == "owner"

    @pytest.mark.asyncio
    async def test_create_item_in_missing_sub_container(self, tree):
        with pytest.raises(NotFoundError):
            await tree.create_item("owner", "c1", "Ghost", sub_container_id="nope")

    @pytest.mark.asyncio
    async def test_create_in_missing_container(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.create_item("owner", "nope", "Ghost")

    @pytest.mark.asyncio
    async def test_create_names_are_clamped(self, coordinator):
        result = await coordinator.create_container("u1", "n" * 80, container_id="c1")
        assert len(result.document["name"]) == NAME_MAX_LENGTH

    @pytest.mark.asyncio
    async def test_create_emits_events(self, tree, audit):
        types = await event_types(audit, "c1")
        assert sorted(types) == sorted(
            ["CONTAINER_CREATED", "SUBCONTAINER_CREATED", "ITEM_CREATED", "ITEM_CREATED"]
        )


class TestMutate:
    """Tests for mutate()."""

    @pytest.mark.asyncio
    async def test_patch_with_matching_version(self, tree, store, audit, clock):
        current = await store.get("containers/c1/items/i1")
        clock.advance(1000)

        result = await tree.mutate(
            EntityRef.item("c1", "i1"), {"name": "Desk lamp"}, current["edited_at"], actor_id="owner"
        )
        await tree.drain()

        assert result.edited_at == clock.now
        assert result.previous_edited_at == current["edited_at"]
        assert result.changes == {"name": {"from": "Lamp", "to": "Desk lamp"}}
        latest = await audit.latest("c1")
        assert latest.type == "ITEM_UPDATED"
        assert latest.payload == {
            "container_id": "c1",
            "item_id": "i1",
            "changes": {"name": {"from": "Lamp", "to": "Desk lamp"}},
        }

    @pytest.mark.asyncio
    async def test_conflict_carries_current_version(self, tree, store):
        current = await store.get("containers/c1/items/i1")

        with pytest.raises(ConflictError) as exc_info:
            await tree.mutate(EntityRef.item("c1", "i1"), {"name": "X"}, current["edited_at"] - 1)

        assert exc_info.value.current_edited_at == current["edited_at"]
        assert (await store.get("containers/c1/items/i1"))["name"] == "Lamp"

    @pytest.mark.asyncio
    async def test_stale_writer_loses(self, tree, store):
        """Two writers holding the same version: the second conflicts."""
        seen = (await store.get("containers/c1/items/i1"))["edited_at"]
        await tree.mutate(EntityRef.item("c1", "i1"), {"name": "First"}, seen)

        with pytest.raises(ConflictError):
            await tree.mutate(EntityRef.item("c1", "i1"), {"name": "Second"}, seen)

    @pytest.mark.asyncio
    async def test_missing_entity(self, tree):
        with pytest.raises(NotFoundError):
            await tree.mutate(EntityRef.item("c1", "missing"), {"name": "X"})

    @pytest.mark.asyncio
    async def test_edited_at_strictly_increases_with_frozen_clock(self, tree, clock):
        ref = EntityRef.container("c1")
        first = await tree.mutate(ref, {"description": "a"})
        second = await tree.mutate(ref, {"description": "b"})

        assert first.edited_at == clock.now
        assert second.edited_at == clock.now + 1

    @pytest.mark.asyncio
    async def test_no_op_patch_emits_nothing(self, tree, audit):
        result = await tree.mutate(EntityRef.item("c1", "i1"), {"name": "Lamp"})
        await tree.drain()

        assert result.changes == {}
        assert (await event_types(audit, "c1")).count("ITEM_UPDATED") == 0

    @pytest.mark.asyncio
    async def test_protected_fields_are_ignored(self, tree, store):
        result = await tree.mutate(
            EntityRef.item("c1", "i1"), {"name": "Lamp 2", "owner_id": "mallory", "id": "zzz"}
        )
        doc = await store.get("containers/c1/items/i1")
        assert doc["owner_id"] == "owner"
        assert doc["id"] == "i1"
        assert list(result.changes) == ["name"]

    @pytest.mark.asyncio
    async def test_only_protected_fields_is_invalid(self, tree):
        with pytest.raises(ValidationError):
            await tree.mutate(EntityRef.item("c1", "i1"), {"edited_at": 1})

    @pytest.mark.asyncio
    async def test_title_alias_and_clamp(self, tree, store):
        await tree.mutate(EntityRef.item("c1", "i1"), {"title": "t" * 50})
        doc = await store.get("containers/c1/items/i1")
        assert doc["name"] == "t" * NAME_MAX_LENGTH
        assert "title" not in doc

    @pytest.mark.asyncio
    async def test_media_is_normalised(self, tree, store):
        result = await tree.mutate(
            EntityRef.item("c1", "i1"), {"media": ["a", "", "b", "c", "d", "e"], "primary_media": "z"}
        )
        doc = await store.get("containers/c1/items/i1")
        assert doc["media"] == ["a", "b", "c", "d"]
        assert doc["primary_media"] == "a"
        assert "media" in result.changes

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_mutation(self, store, clock):
        broken_audit = AuditLog(InMemoryDocumentStore(), clock=clock)
        coordinator = MutationCoordinator(store, broken_audit, clock=clock)
        await coordinator.create_container("u1", "Home", container_id="c1")

        result = await coordinator.mutate(EntityRef.container("c1"), {"name": "House"})
        outcomes = await coordinator.drain()

        assert result.document["name"] == "House"
        assert outcomes and all(o.error for o in outcomes)


class TestDelete:
    """Tests for cascading deletes."""

    @pytest.mark.asyncio
    async def test_delete_container_cascades(self, tree, store):
        await tree.share("owner", "c1", "guest", role="editor")
        await tree.share("owner", "c1", "guest", permissions=PermissionSet.full(), item_id="i1")

        result = await tree.delete(EntityRef.container("c1"), actor_id="owner")

        assert result.deleted_paths[-1] == "containers/c1"
        assert await store.get("containers/c1") is None
        assert store.paths("containers/c1/items/") == []
        assert store.paths("containers/c1/subcontainers/") == []
        assert store.paths("containers/c1/grants/") == []
        # Memberships are revoked, not deleted
        for uid in ("owner", "guest"):
            row = await store.get(f"containers/c1/memberships/{uid}")
            assert row["status"] == "REVOKED"
            assert row["revoked_at"] is not None

    @pytest.mark.asyncio
    async def test_delete_sub_container_takes_its_items(self, tree, store):
        await tree.share("owner", "c1", "guest", sub_container_id="s1")
        await tree.share("owner", "c1", "guest", item_id="i1")

        await tree.delete(EntityRef.sub_container("c1", "s1"))

        assert await store.get("containers/c1/items/i2") is None
        assert await store.get("containers/c1/items/i1") is not None
        assert store.paths("containers/c1/grants/") == ["containers/c1/grants/ITEM:i1:guest"]

    @pytest.mark.asyncio
    async def test_delete_item_emits_request(self, tree, audit):
        await tree.delete(EntityRef.item("c1", "i1"), actor_id="owner")
        await tree.drain()

        latest = await audit.latest("c1")
        assert latest.type == "ITEM_DELETE_REQUESTED"
        assert latest.payload["item_id"] == "i1"

    @pytest.mark.asyncio
    async def test_delete_missing(self, tree):
        with pytest.raises(NotFoundError):
            await tree.delete(EntityRef.item("c1", "ghost"))

    @pytest.mark.asyncio
    async def test_delete_takes_item_written_before_commit(self, tree, store, monkeypatch):
        write_before_commit(monkeypatch, store, "containers/c1/items/late", {"name": "Late", "sub_container_id": "s1"})

        result = await tree.delete(EntityRef.sub_container("c1", "s1"))

        assert "containers/c1/items/late" in result.deleted_paths
        assert await store.get("containers/c1/items/late") is None
        assert await store.get("containers/c1/items/i1") is not None

    @pytest.mark.asyncio
    async def test_delete_container_revokes_membership_written_before_commit(self, tree, store, monkeypatch):
        write_before_commit(
            monkeypatch,
            store,
            "containers/c1/memberships/late",
            Membership.delegate("c1", "late", PermissionSet.view_only(), 1).to_dict(),
        )

        await tree.delete(EntityRef.container("c1"))

        assert (await store.get("containers/c1/memberships/late"))["status"] == "REVOKED"


class TestMove:
    """Tests for moves."""

    @pytest.fixture
    async def two_containers(self, tree, clock):
        await tree.create_container("owner2", "Office", container_id="c2")
        await tree.create_sub_container("owner2", "c2", "Drawer", sub_container_id="s2")
        await tree.drain()
        clock.advance(1000)
        return tree

    @pytest.mark.asyncio
    async def test_move_within_container(self, tree, store, audit):
        result = await tree.move_item("owner", "c1", "i1", "c1", "s1")
        await tree.drain()

        assert (await store.get("containers/c1/items/i1"))["sub_container_id"] == "s1"
        assert result.changes == {"sub_container_id": {"from": None, "to": "s1"}}
        assert (await audit.latest("c1")).type == "ITEM_UPDATED"

    @pytest.mark.asyncio
    async def test_move_item_across_containers(self, two_containers, store, audit, clock):
        tree = two_containers
        await tree.share("owner", "c1", "guest", item_id="i1")
        clock.advance(10)

        await tree.move_item("owner", "c1", "i1", "c2", "s2")
        await tree.drain()

        assert await store.get("containers/c1/items/i1") is None
        moved = await store.get("containers/c2/items/i1")
        assert moved["container_id"] == "c2"
        assert moved["sub_container_id"] == "s2"
        assert moved["owner_id"] == "owner2"
        assert store.paths("containers/c1/grants/") == []
        assert (await audit.latest("c1")).type == "ITEM_MOVED_OUT"
        assert (await audit.latest("c2")).type == "ITEM_MOVED_IN"

    @pytest.mark.asyncio
    async def test_move_item_to_missing_container(self, tree, store):
        with pytest.raises(NotFoundError):
            await tree.move_item("owner", "c1", "i1", "nope")
        assert await store.get("containers/c1/items/i1") is not None

    @pytest.mark.asyncio
    async def test_move_item_conflict(self, two_containers):
        with pytest.raises(ConflictError):
            await two_containers.move_item("owner", "c1", "i1", "c2", expected_edited_at=1)

    @pytest.mark.asyncio
    async def test_move_sub_container_with_items(self, two_containers, store, audit):
        tree = two_containers
        await tree.share("owner", "c1", "guest", sub_container_id="s1")

        await tree.move_sub_container("owner", "c1", "s1", "c2")
        await tree.drain()

        assert await store.get("containers/c1/subcontainers/s1") is None
        assert await store.get("containers/c1/items/i2") is None
        assert (await store.get("containers/c2/subcontainers/s1"))["container_id"] == "c2"
        item = await store.get("containers/c2/items/i2")
        assert item["sub_container_id"] == "s1"
        assert item["owner_id"] == "owner2"
        assert store.paths("containers/c1/grants/") == []
        moved_in = await audit.latest("c2")
        assert moved_in.type == "SUBCONTAINER_MOVED_IN"
        assert moved_in.payload["item_count"] == 1

    @pytest.mark.asyncio
    async def test_move_sub_container_to_same_container(self, tree):
        with pytest.raises(ValidationError):
            await tree.move_sub_container("owner", "c1", "s1", "c1")

    @pytest.mark.asyncio
    async def test_move_sub_container_takes_item_written_before_commit(self, two_containers, store, monkeypatch):
        write_before_commit(monkeypatch, store, "containers/c1/items/late", {"name": "Late", "sub_container_id": "s1"})

        await two_containers.move_sub_container("owner", "c1", "s1", "c2")

        assert store.paths("containers/c1/items/") == ["containers/c1/items/i1"]
        late = await store.get("containers/c2/items/late")
        assert late["container_id"] == "c2"
        assert late["owner_id"] == "owner2"

    @pytest.mark.asyncio
    async def test_move_item_drops_grant_written_before_commit(self, two_containers, store, monkeypatch):
        grant = PermissionGrant("guest", "c1", ScopeType.ITEM, "i1", PermissionSet.view_only(), 1)
        write_before_commit(monkeypatch, store, "containers/c1/grants/ITEM:i1:guest", grant.to_dict())

        await two_containers.move_item("owner", "c1", "i1", "c2")

        assert store.paths("containers/c1/grants/") == []


class TestViews:
    """Tests for record_view()."""

    @pytest.mark.asyncio
    async def test_view_does_not_touch_edited_at(self, tree, store, audit, clock):
        before = await store.get("containers/c1/items/i1")
        clock.advance(500)

        await tree.record_view(EntityRef.item("c1", "i1"), actor_id="guest")
        await tree.drain()

        after = await store.get("containers/c1/items/i1")
        assert after["viewed_at"] == clock.now
        assert after["edited_at"] == before["edited_at"]
        assert (await audit.latest("c1")).type == "ITEM_VIEWED"


class TestSharing:
    """Tests for share(), revoke_share() and transfer_ownership()."""

    @pytest.mark.asyncio
    async def test_share_container_writes_delegate(self, tree, store):
        record = await tree.share("owner", "c1", "guest", role="editor", may_create=True)

        assert isinstance(record, Membership)
        assert record.role is MembershipRole.DELEGATE
        row = await store.get("containers/c1/memberships/guest")
        assert row["permissions"]["Edit"] is True
        assert row["permissions"]["Create"] is True
        assert row["permissions"]["Delete"] is False

    @pytest.mark.asyncio
    async def test_share_item_writes_grant(self, tree, store):
        record = await tree.share("owner", "c1", "guest", permissions={"View": True}, item_id="i1")

        assert isinstance(record, PermissionGrant)
        assert record.scope_type is ScopeType.ITEM
        assert await store.get("containers/c1/grants/ITEM:i1:guest") is not None
        assert tree.grants.get(ScopeType.ITEM, "i1", "guest") == record

    @pytest.mark.asyncio
    async def test_share_default_is_view_only(self, tree):
        record = await tree.share("owner", "c1", "guest")
        assert record.permissions == PermissionSet.view_only()

    @pytest.mark.asyncio
    async def test_share_with_owner_is_invalid(self, tree):
        with pytest.raises(ValidationError):
            await tree.share("owner", "c1", "owner", role="editor")

    @pytest.mark.asyncio
    async def test_share_missing_item(self, tree):
        with pytest.raises(NotFoundError):
            await tree.share("owner", "c1", "guest", item_id="ghost")

    @pytest.mark.asyncio
    async def test_revoke_membership(self, tree, store, audit, clock):
        await tree.share("owner", "c1", "guest")
        clock.advance(10)
        await tree.revoke_share("owner", "c1", "guest")
        await tree.drain()

        row = await store.get("containers/c1/memberships/guest")
        assert row["status"] == "REVOKED"
        assert tree.memberships.get("c1", "guest").status is MembershipStatus.REVOKED
        assert (await audit.latest("c1")).type == "CONTAINER_SHARE_REVOKED"

    @pytest.mark.asyncio
    async def test_revoke_grant(self, tree, store):
        await tree.share("owner", "c1", "guest", sub_container_id="s1")
        await tree.revoke_share("owner", "c1", "guest", sub_container_id="s1")

        assert store.paths("containers/c1/grants/") == []
        assert tree.grants.get(ScopeType.SUBCONTAINER, "s1", "guest") is None

    @pytest.mark.asyncio
    async def test_revoke_owner_is_invalid(self, tree):
        with pytest.raises(ValidationError):
            await tree.revoke_share("owner", "c1", "owner")

    @pytest.mark.asyncio
    async def test_revoke_nothing(self, tree):
        with pytest.raises(NotFoundError):
            await tree.revoke_share("owner", "c1", "stranger")
        with pytest.raises(NotFoundError):
            await tree.revoke_share("owner", "c1", "stranger", item_id="i1")

    @pytest.mark.asyncio
    async def test_transfer_ownership(self, tree, store, audit):
        result = await tree.transfer_ownership("c1", "owner", "heir", actor_id="owner")
        await tree.drain()

        assert (await store.get("containers/c1"))["owner_id"] == "heir"
        assert result.new_owner.is_active_owner
        assert result.previous_owner.role is MembershipRole.DELEGATE
        assert result.previous_owner.effective_permissions() == PermissionSet.full()
        assert (await store.get("containers/c1/memberships/heir"))["role"] == "OWNER"
        assert (await audit.latest("c1")).type == "CONTAINER_OWNERSHIP_TRANSFERRED"

    @pytest.mark.asyncio
    async def test_transfer_from_non_owner(self, tree):
        with pytest.raises(ValidationError):
            await tree.transfer_ownership("c1", "guest", "heir")

    @pytest.mark.asyncio
    async def test_transfer_to_self(self, tree):
        with pytest.raises(ValidationError):
            await tree.transfer_ownership("c1", "owner", "owner")
