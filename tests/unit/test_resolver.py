"""
Unit tests for permission resolution.

Tests cover:
- Specificity precedence (item > sub-container > membership)
- Owner override
- The delegate/item-grant scenario
- Display roles and capabilities
"""

from dataclasses import replace

import pytest

from vaultsync.access.grant_store import GrantStore
from vaultsync.access.membership_store import MembershipStore
from vaultsync.access.resolver import PermissionResolver, role_for
from vaultsync.errors import AccessDeniedError
from vaultsync.model.membership import (
    Membership,
    MembershipStatus,
    PermissionGrant,
    ScopeType,
)
from vaultsync.model.permissions import Permission, PermissionSet


@pytest.fixture
def memberships():
    return MembershipStore()


@pytest.fixture
def grants():
    return GrantStore()


@pytest.fixture
def owners():
    return {"C": "O"}


@pytest.fixture
def resolver(memberships, grants, owners):
    return PermissionResolver(memberships, grants, owners.get)


def item_grant(perms, item_id="I", user_id="U"):
    return PermissionGrant(user_id, "C", ScopeType.ITEM, item_id, perms, 1)


def sub_grant(perms, sub_id="S", user_id="U"):
    return PermissionGrant(user_id, "C", ScopeType.SUBCONTAINER, sub_id, perms, 1)


class TestDelegateItemGrantScenario:
    """A narrower grant decides; removing it falls back to the membership."""

    def test_scenario(self, resolver, memberships, grants):
        memberships.upsert(Membership.delegate("C", "U", PermissionSet.view_only(), 1))
        grant = item_grant(PermissionSet(view=True, edit=False))
        grants.upsert(grant)

        assert resolver.resolve("C", None, "I", "U", Permission.EDIT) is False

        grants.discard(grant)
        assert resolver.resolve("C", None, "I", "U", Permission.EDIT) is False

        grants.upsert(replace(grant, permissions=PermissionSet(view=True, edit=True)))
        assert resolver.resolve("C", None, "I", "U", Permission.EDIT) is True


class TestPrecedence:
    """Tests for scope specificity."""

    def test_item_grant_false_does_not_fall_through(self, resolver, memberships, grants):
        """A narrower false beats a broader true."""
        memberships.upsert(Membership.delegate("C", "U", PermissionSet.full(), 1))
        grants.upsert(item_grant(PermissionSet.view_only()))

        assert resolver.resolve("C", None, "I", "U", "Edit") is False
        # Other items still use the membership
        assert resolver.resolve("C", None, "I2", "U", "Edit") is True

    def test_sub_container_grant_applies_to_items_inside(self, resolver, memberships, grants):
        memberships.upsert(Membership.delegate("C", "U", PermissionSet.view_only(), 1))
        grants.upsert(sub_grant(PermissionSet(view=True, edit=True)))

        assert resolver.resolve("C", "S", None, "U", "Edit") is True
        assert resolver.resolve("C", "S", "I", "U", "Edit") is True
        assert resolver.resolve("C", None, "I", "U", "Edit") is False

    def test_sub_container_grant_narrows_items_without_item_grant(self, resolver, memberships, grants):
        """The sub-container grant, not the membership, decides for items inside it."""
        memberships.upsert(Membership.delegate("C", "U", PermissionSet(view=True, edit=True), 1))
        grants.upsert(sub_grant(PermissionSet.view_only()))

        assert resolver.resolve("C", "S", "I", "U", "Edit") is False
        assert resolver.resolve("C", "S", "I", "U", "View") is True
        # Loose items are still decided by the membership
        assert resolver.resolve("C", None, "I2", "U", "Edit") is True

    def test_item_grant_beats_sub_container_grant(self, resolver, grants):
        grants.upsert(sub_grant(PermissionSet.full()))
        grants.upsert(item_grant(PermissionSet.view_only()))

        assert resolver.resolve("C", "S", "I", "U", "Delete") is False
        assert resolver.resolve("C", "S", "I", "U", "View") is True

    def test_grant_without_membership(self, resolver, grants):
        """A grant alone is enough at its scope."""
        grants.upsert(item_grant(PermissionSet(view=True, edit=True)))
        assert resolver.resolve("C", None, "I", "U", "Edit") is True
        assert resolver.resolve("C", None, None, "U", "View") is False

    def test_delegate_without_permissions_is_view_only(self, resolver, memberships):
        memberships.upsert(Membership.delegate("C", "U", None, 1))
        assert resolver.resolve("C", None, None, "U", "View") is True
        assert resolver.resolve("C", None, None, "U", "Edit") is False

    def test_revoked_delegate_has_no_access(self, resolver, memberships):
        m = Membership.delegate("C", "U", PermissionSet.full(), 1)
        memberships.upsert(replace(m, status=MembershipStatus.REVOKED, revoked_at=2))
        assert resolver.resolve("C", None, None, "U", "View") is False

    def test_unknown_user_is_denied(self, resolver):
        assert resolver.resolve("C", None, None, "nobody", "View") is False
        assert resolver.resolve("C", None, None, None, "View") is False


class TestOwnerOverride:
    """Owners hold everything regardless of grants."""

    def test_owner_of_record(self, resolver, grants):
        grants.upsert(item_grant(PermissionSet(), user_id="O"))
        for perm in Permission:
            assert resolver.resolve("C", None, "I", "O", perm) is True

    def test_active_owner_membership(self, resolver, memberships, grants):
        memberships.upsert(Membership.owner("C", "U", 1))
        grants.upsert(sub_grant(PermissionSet()))
        assert resolver.resolve("C", "S", None, "U", "Delete") is True

    def test_revoked_owner_membership_is_not_owner(self, resolver, memberships):
        owner = Membership.owner("C", "U", 1)
        memberships.upsert(replace(owner, status=MembershipStatus.REVOKED, revoked_at=2))
        assert resolver.is_owner("C", "U") is False
        assert resolver.resolve("C", None, None, "U", "View") is False


class TestRequire:
    """Tests for require()."""

    def test_require_raises_with_context(self, resolver):
        with pytest.raises(AccessDeniedError) as exc_info:
            resolver.require("C", None, "I", "U", "Edit")
        assert exc_info.value.permission == "Edit"
        assert exc_info.value.scope_id == "I"
        assert exc_info.value.code == "ACCESS_DENIED"

    def test_require_passes_for_owner(self, resolver):
        resolver.require("C", None, None, "O", Permission.DELETE)


class TestRolesAndCapabilities:
    """Tests for display_role() and capabilities()."""

    def test_role_for(self):
        assert role_for(PermissionSet.full()) == "owner"
        assert role_for(PermissionSet.from_role("manager")) == "manager"
        assert role_for(PermissionSet.from_role("editor")) == "editor"
        assert role_for(PermissionSet.view_only()) == "reviewer"
        assert role_for(PermissionSet(), is_owner=True) == "owner"

    def test_display_role_follows_scope(self, resolver, memberships, grants):
        memberships.upsert(Membership.delegate("C", "U", PermissionSet.from_role("editor"), 1))
        grants.upsert(item_grant(PermissionSet.from_role("manager")))

        assert resolver.display_role("C", None, None, "U") == "editor"
        assert resolver.display_role("C", None, "I", "U") == "manager"
        assert resolver.display_role("C", None, None, "O") == "owner"

    def test_managers_share_items_only(self, resolver, memberships):
        memberships.upsert(Membership.delegate("C", "U", PermissionSet.from_role("manager"), 1))

        assert resolver.capabilities("C", None, None, "U").can_share is False
        caps = resolver.capabilities("C", None, "I", "U")
        assert caps.can_share is True
        assert caps.can_move is True
        assert caps.can_delete is False

    def test_owner_capabilities(self, resolver):
        caps = resolver.capabilities("C", None, None, "O")
        assert caps.role == "owner"
        assert caps.to_dict()["can_share"] is True
        assert caps.can_delete is True
