"""
Permission resolution for vaultsync.

This module computes effective access from the cached memberships and
grants:
- resolve(): single permission check at container, sub-container or item scope
- display_role(): UI role label derived from the effective permission set
- capabilities(): UI affordance map

Invariants:
    - Owner of record or ACTIVE OWNER membership grants everything, even
      over a contradicting narrower grant
    - The most specific scope with a grant decides, whether its value is
      true or false; there is no fall-through on false
    - An item with no item grant of its own inherits the grant on its
      sub-container, before the container membership is consulted. A
      sub-container grant therefore narrows or widens every item inside
      it that has no item grant
    - Without a grant, an ACTIVE DELEGATE membership decides (View-only
      when it carries no permissions); otherwise access is denied

How to change safely:
    - Keep resolution a pure function of cached state; no store I/O here
    - Test precedence with a grant that is narrower than the membership
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..errors import AccessDeniedError
from ..model.membership import Membership, MembershipRole, PermissionGrant, ScopeType
from ..model.permissions import (
    ROLE_EDITOR,
    ROLE_MANAGER,
    ROLE_OWNER,
    ROLE_REVIEWER,
    Permission,
    PermissionSet,
)
from .grant_store import GrantStore
from .membership_store import MembershipStore

logger = logging.getLogger(__name__)

OwnerLookup = Callable[[str], "str | None"]


def role_for(permissions: PermissionSet, is_owner: bool = False) -> str:
    """Map a permission set to a display role."""
    if is_owner or permissions.delete:
        return ROLE_OWNER
    if permissions.move or permissions.clone:
        return ROLE_MANAGER
    if permissions.edit or permissions.create:
        return ROLE_EDITOR
    return ROLE_REVIEWER


@dataclass(frozen=True)
class Capabilities:
    """UI affordances at one scope.

    Attributes:
        role: Display role label
        can_view ... can_delete: Effective permissions
        can_share: May share this resource with others
    """

    role: str
    can_view: bool
    can_create: bool
    can_edit: bool
    can_move: bool
    can_clone: bool
    can_delete: bool
    can_share: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "can_view": self.can_view,
            "can_create": self.can_create,
            "can_edit": self.can_edit,
            "can_move": self.can_move,
            "can_clone": self.can_clone,
            "can_delete": self.can_delete,
            "can_share": self.can_share,
        }


class PermissionResolver:
    """Computes effective access from memberships and grants.

    Thread safety:
        Reads cached state only; safe to call from any coroutine.

    Example:
        >>> resolver = PermissionResolver(memberships, grants, cache.owner_of)
        >>> resolver.resolve("c1", None, "i1", "u1", Permission.EDIT)
        False
    """

    def __init__(
        self,
        memberships: MembershipStore,
        grants: GrantStore,
        owner_of: OwnerLookup | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            memberships: Membership cache
            grants: Grant cache
            owner_of: Returns the owner-of-record user id of a container
        """
        self.memberships = memberships
        self.grants = grants
        self._owner_of = owner_of or (lambda _cid: None)

    def is_owner(self, container_id: str, user_id: str | None) -> bool:
        """Owner of record or ACTIVE OWNER membership."""
        if not user_id:
            return False
        if self._owner_of(container_id) == user_id:
            return True
        membership = self.memberships.get(container_id, user_id)
        return membership is not None and membership.is_active_owner

    def _scoped_grant(
        self,
        sub_container_id: str | None,
        item_id: str | None,
        user_id: str,
    ) -> PermissionGrant | None:
        if item_id:
            grant = self.grants.get(ScopeType.ITEM, item_id, user_id)
            if grant is not None:
                return grant
        if sub_container_id:
            return self.grants.get(ScopeType.SUBCONTAINER, sub_container_id, user_id)
        return None

    def _delegate(self, container_id: str, user_id: str) -> Membership | None:
        membership = self.memberships.get(container_id, user_id)
        if membership is None or not membership.is_active:
            return None
        if membership.role is not MembershipRole.DELEGATE:
            return None
        return membership

    def effective_permissions(
        self,
        container_id: str,
        sub_container_id: str | None,
        item_id: str | None,
        user_id: str | None,
    ) -> PermissionSet:
        """The permission set resolve() answers from at this scope."""
        if not user_id:
            return PermissionSet()
        if self.is_owner(container_id, user_id):
            return PermissionSet.full()

        # First grant found from the narrowest scope outward decides;
        # without one the container membership decides
        grant = self._scoped_grant(sub_container_id, item_id, user_id)
        if grant is not None:
            return grant.permissions

        delegate = self._delegate(container_id, user_id)
        if delegate is None:
            return PermissionSet()
        return delegate.effective_permissions()

    def resolve(
        self,
        container_id: str,
        sub_container_id: str | None,
        item_id: str | None,
        user_id: str | None,
        permission: Permission | str,
    ) -> bool:
        """Whether ``user_id`` holds ``permission`` at the given scope."""
        perm = Permission.parse(permission)
        allowed = self.effective_permissions(
            container_id, sub_container_id, item_id, user_id
        ).allows(perm)
        logger.debug(
            "Resolved permission",
            extra={
                "container_id": container_id,
                "sub_container_id": sub_container_id,
                "item_id": item_id,
                "user_id": user_id,
                "permission": perm.value,
                "allowed": allowed,
            },
        )
        return allowed

    def require(
        self,
        container_id: str,
        sub_container_id: str | None,
        item_id: str | None,
        user_id: str | None,
        permission: Permission | str,
    ) -> None:
        """Check a permission and raise if denied.

        Raises:
            AccessDeniedError: If access is denied
        """
        perm = Permission.parse(permission)
        if not self.resolve(container_id, sub_container_id, item_id, user_id, perm):
            raise AccessDeniedError(
                user_id or "",
                container_id,
                perm.value,
                scope_id=item_id or sub_container_id,
            )

    def display_role(
        self,
        container_id: str,
        sub_container_id: str | None,
        item_id: str | None,
        user_id: str | None,
    ) -> str:
        """UI role label at a scope: owner, manager, editor or reviewer."""
        if self.is_owner(container_id, user_id):
            return ROLE_OWNER
        perms = self.effective_permissions(container_id, sub_container_id, item_id, user_id)
        return role_for(perms)

    def capabilities(
        self,
        container_id: str,
        sub_container_id: str | None,
        item_id: str | None,
        user_id: str | None,
    ) -> Capabilities:
        """UI affordance map at a scope.

        Owners may share everywhere; managers may additionally share items.
        """
        perms = self.effective_permissions(container_id, sub_container_id, item_id, user_id)
        role = self.display_role(container_id, sub_container_id, item_id, user_id)
        can_share = role == ROLE_OWNER or (bool(item_id) and role == ROLE_MANAGER)
        return Capabilities(
            role=role,
            can_view=perms.view,
            can_create=perms.create,
            can_edit=perms.edit,
            can_move=perms.move,
            can_clone=perms.clone,
            can_delete=perms.delete,
            can_share=can_share,
        )
