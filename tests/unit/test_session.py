"""
Unit tests for VaultSession.

Tests cover:
- Baseline discovery at start() and upkeep after lifecycle operations
- Permission-gated mutations and lifecycle operations
- Request-local access views
- Teardown at stop()
"""

import pytest

from vaultsync.errors import AccessDeniedError, NotFoundError, ValidationError
from vaultsync.model.entities import EntityRef
from vaultsync.model.membership import Membership, PermissionGrant, ScopeType
from vaultsync.model.permissions import PermissionSet
from vaultsync.session import StaticIdentity, VaultSession

T0 = 1_700_000_000_000


@pytest.fixture
async def seeded(store):
    """u1 owns c1 by record and c3 by membership; c2 is shared with u1."""
    await store.set("containers/c1", {"name": "Home", "owner_id": "u1", "edited_at": T0})
    await store.set("containers/c1/memberships/u1", Membership.owner("c1", "u1", T0).to_dict())
    await store.set("containers/c1/items/i1", {"name": "Lamp", "edited_at": T0})

    await store.set("containers/c2", {"name": "Office", "owner_id": "u2", "edited_at": T0})
    await store.set("containers/c2/memberships/u2", Membership.owner("c2", "u2", T0).to_dict())
    await store.set(
        "containers/c2/memberships/u1",
        Membership.delegate("c2", "u1", PermissionSet.view_only(), T0).to_dict(),
    )
    await store.set("containers/c2/items/i2", {"name": "Desk", "edited_at": T0})

    await store.set("containers/c3", {"name": "Cabin", "owner_id": "legacy", "edited_at": T0})
    await store.set("containers/c3/memberships/u1", Membership.owner("c3", "u1", T0).to_dict())
    return store


class TestStart:
    """Tests for start()."""

    @pytest.mark.asyncio
    async def test_baseline_includes_owner_of_record_and_owner_membership(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        baseline = await session.start()

        assert baseline == frozenset({"c1", "c3"})
        assert session.subscriptions.subscribed == frozenset({"c1", "c3"})
        assert [i.id for i in session.items("c1")] == ["i1"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_requires_user(self, seeded):
        session = VaultSession(seeded, StaticIdentity(None))
        with pytest.raises(ValidationError):
            await session.start()

    @pytest.mark.asyncio
    async def test_shared_container_ids(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        assert await session.shared_container_ids() == ["c2"]
        assert await session.shared_container_ids("u2") == []


class TestMutate:
    """Tests for mutate()."""

    @pytest.mark.asyncio
    async def test_view_only_delegate_is_denied(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        await session.refresh_access("c2")

        with pytest.raises(AccessDeniedError):
            await session.mutate(EntityRef.item("c2", "i2"), {"name": "Table"})
        assert (await seeded.get("containers/c2/items/i2"))["name"] == "Desk"

    @pytest.mark.asyncio
    async def test_owner_may_edit(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u2"))
        await session.refresh_access("c2")

        result = await session.mutate(EntityRef.item("c2", "i2"), {"name": "Table"}, T0)
        assert result.changes == {"name": {"from": "Desk", "to": "Table"}}
        await session.stop()

    @pytest.mark.asyncio
    async def test_explicit_user_overrides_identity(self, seeded):
        session = VaultSession(seeded)
        await session.refresh_access("c2")

        assert session.resolve("c2", None, "i2", "View", user_id="u1") is True
        assert session.resolve("c2", None, "i2", "Edit", user_id="u1") is False
        assert session.display_role("c2", user_id="u2") == "owner"

    @pytest.mark.asyncio
    async def test_sub_container_grant_applies_to_uncached_item(self, seeded):
        """The item's sub-container is read from the store when not cached."""
        await seeded.set("containers/c2/subcontainers/s1", {"name": "Drawer", "edited_at": T0})
        await seeded.set(
            "containers/c2/items/i3", {"name": "Pen", "sub_container_id": "s1", "edited_at": T0}
        )
        await seeded.set(
            "containers/c2/memberships/u3",
            Membership.delegate("c2", "u3", PermissionSet(view=True, edit=True), T0).to_dict(),
        )
        grant = PermissionGrant("u3", "c2", ScopeType.SUBCONTAINER, "s1", PermissionSet.view_only(), T0)
        await seeded.set(f"containers/c2/grants/{grant.id}", grant.to_dict())
        session = VaultSession(seeded, StaticIdentity("u3"))
        await session.refresh_access("c2")
        assert session.items("c2") == []

        with pytest.raises(AccessDeniedError):
            await session.mutate(EntityRef.item("c2", "i3"), {"name": "Marker"})
        assert (await seeded.get("containers/c2/items/i3"))["name"] == "Pen"

        # A loose item is still decided by the membership
        await session.mutate(EntityRef.item("c2", "i2"), {"name": "Table"})
        await session.stop()

    @pytest.mark.asyncio
    async def test_missing_item(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u2"))
        await session.refresh_access("c2")

        with pytest.raises(NotFoundError):
            await session.mutate(EntityRef.item("c2", "ghost"), {"name": "Boo"})


class TestLifecycle:
    """Tests for the gated lifecycle operations and baseline upkeep."""

    @pytest.mark.asyncio
    async def test_created_container_joins_baseline(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        await session.start()

        await session.create_container("Garage", container_id="c9")

        assert "c9" in session.subscriptions.baseline
        assert session.subscriptions.is_subscribed("c9")
        assert session.container("c9").name == "Garage"
        await session.stop()

    @pytest.mark.asyncio
    async def test_deleted_container_leaves_baseline(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        await session.start()

        await session.delete(EntityRef.container("c1"))

        assert "c1" not in session.subscriptions.subscribed
        assert session.container("c1") is None
        await session.stop()

    @pytest.mark.asyncio
    async def test_transfer_reaches_the_receiving_session(self, seeded):
        giver = VaultSession(seeded, StaticIdentity("u1"))
        receiver = VaultSession(seeded, StaticIdentity("u2"))
        await giver.start()
        await receiver.start()
        assert "c1" not in receiver.subscriptions.subscribed

        await giver.transfer_ownership("c1", "u2")
        await receiver.drain()

        assert "c1" not in giver.subscriptions.subscribed
        assert "c1" in receiver.subscriptions.subscribed
        assert receiver.display_role("c1") == "owner"
        await giver.stop()
        await receiver.stop()

    @pytest.mark.asyncio
    async def test_transfer_requires_ownership(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        await session.start()
        await session.retain("c2")

        with pytest.raises(AccessDeniedError):
            await session.transfer_ownership("c2", "u1")
        assert (await seeded.get("containers/c2"))["owner_id"] == "u2"
        await session.stop()

    @pytest.mark.asyncio
    async def test_view_only_delegate_cannot_create_share_or_delete(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        await session.start()
        await session.retain("c2")

        with pytest.raises(AccessDeniedError):
            await session.create_item("c2", "Chair")
        with pytest.raises(AccessDeniedError):
            await session.share("c2", "u4")
        with pytest.raises(AccessDeniedError):
            await session.delete(EntityRef.item("c2", "i2"))
        assert seeded.paths("containers/c2/items/") == ["containers/c2/items/i2"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_owner_shares_and_moves(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        await session.start()

        await session.share("c1", "u4", role="editor")
        await session.create_sub_container("c1", "Attic", sub_container_id="s1")
        await session.move_item("c1", "i1", "c1", "s1")
        await session.record_view(EntityRef.item("c1", "i1"))

        assert (await seeded.get("containers/c1/memberships/u4"))["role"] == "DELEGATE"
        assert (await seeded.get("containers/c1/items/i1"))["sub_container_id"] == "s1"
        await session.stop()


class TestLoadAccess:
    """Tests for request-local access views."""

    @pytest.mark.asyncio
    async def test_decisions_leave_session_caches_alone(self, seeded):
        session = VaultSession(seeded)

        access = await session.load_access("c2")

        assert access.resolver.resolve("c2", None, "i2", "u1", "View") is True
        assert access.resolver.resolve("c2", None, "i2", "u1", "Edit") is False
        assert access.resolver.is_owner("c2", "u2")
        assert session.container("c2") is None
        assert session.memberships_for("c2") == []
        assert session.grants_for("c2") == []

    @pytest.mark.asyncio
    async def test_owner_of_record_without_membership(self, seeded):
        session = VaultSession(seeded)
        access = await session.load_access("c3")
        assert access.resolver.is_owner("c3", "legacy")
        assert access.container.name == "Cabin"

    @pytest.mark.asyncio
    async def test_missing_container(self, seeded):
        assert await VaultSession(seeded).load_access("nope") is None


class TestStop:
    """Tests for stop()."""

    @pytest.mark.asyncio
    async def test_stop_detaches_every_listener(self, seeded):
        session = VaultSession(seeded, StaticIdentity("u1"))
        await session.start()
        await session.retain("c2")
        assert seeded.listener_count() > 0

        await session.stop()
        assert seeded.listener_count() == 0
        assert session.containers() == []
