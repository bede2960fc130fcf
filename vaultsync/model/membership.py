"""
Membership and grant records.

A Membership is a user's container-wide role; a PermissionGrant is a
narrower override at sub-container or item scope.

Invariants:
    - OWNER memberships carry permissions=None (interpreted as the full set)
    - One membership per (container_id, user_id); writes upsert in place
    - One grant per (scope_type, scope_id, user_id); id encodes that triple
    - Memberships are revoked, never deleted
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .permissions import PermissionSet


class MembershipRole(Enum):
    OWNER = "OWNER"
    DELEGATE = "DELEGATE"


class MembershipStatus(Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class ScopeType(Enum):
    """Scopes narrower than the container at which grants can exist."""

    SUBCONTAINER = "SUBCONTAINER"
    ITEM = "ITEM"


@dataclass(frozen=True)
class Membership:
    """Container-wide role record for one user.

    Attributes:
        container_id: Container the role applies to
        user_id: Member user id
        role: OWNER or DELEGATE
        permissions: Delegate permissions (None for owners)
        status: ACTIVE or REVOKED
        assigned_at: When the role was (last) assigned (ms)
        revoked_at: When the role was revoked (ms), if revoked
    """

    container_id: str
    user_id: str
    role: MembershipRole
    permissions: PermissionSet | None = None
    status: MembershipStatus = MembershipStatus.ACTIVE
    assigned_at: int = 0
    revoked_at: int | None = None

    def __post_init__(self) -> None:
        if self.role is MembershipRole.OWNER and self.permissions is not None:
            object.__setattr__(self, "permissions", None)

    @property
    def is_active(self) -> bool:
        return self.status is MembershipStatus.ACTIVE

    @property
    def is_active_owner(self) -> bool:
        return self.is_active and self.role is MembershipRole.OWNER

    def effective_permissions(self) -> PermissionSet:
        """Permission set this row grants while active."""
        if not self.is_active:
            return PermissionSet()
        if self.role is MembershipRole.OWNER:
            return PermissionSet.full()
        return self.permissions if self.permissions is not None else PermissionSet.view_only()

    @classmethod
    def owner(cls, container_id: str, user_id: str, assigned_at: int) -> Membership:
        return cls(container_id, user_id, MembershipRole.OWNER, None, assigned_at=assigned_at)

    @classmethod
    def delegate(
        cls,
        container_id: str,
        user_id: str,
        permissions: PermissionSet | None,
        assigned_at: int,
    ) -> Membership:
        return cls(container_id, user_id, MembershipRole.DELEGATE, permissions, assigned_at=assigned_at)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a store document."""
        return {
            "id": self.user_id,
            "container_id": self.container_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "permissions": self.permissions.to_dict() if self.permissions is not None else None,
            "status": self.status.value,
            "assigned_at": self.assigned_at,
            "revoked_at": self.revoked_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Membership:
        """Create from a store document.

        Unknown roles are treated as DELEGATE; unknown statuses as REVOKED so
        that malformed rows never widen access.
        """
        role_raw = str(data.get("role") or "").upper()
        role = MembershipRole.OWNER if role_raw == "OWNER" else MembershipRole.DELEGATE
        status_raw = str(data.get("status") or "").upper()
        status = MembershipStatus.ACTIVE if status_raw == "ACTIVE" else MembershipStatus.REVOKED
        perms = data.get("permissions")
        revoked_at = data.get("revoked_at")
        return cls(
            container_id=str(data["container_id"]),
            user_id=str(data.get("user_id") or data["id"]),
            role=role,
            permissions=PermissionSet.from_dict(perms) if perms is not None else None,
            status=status,
            assigned_at=int(data.get("assigned_at") or 0),
            revoked_at=int(revoked_at) if revoked_at is not None else None,
        )


def grant_id(scope_type: ScopeType, scope_id: str, user_id: str) -> str:
    return f"{scope_type.value}:{scope_id}:{user_id}"


@dataclass(frozen=True)
class PermissionGrant:
    """Scoped permission override.

    Attributes:
        user_id: Grantee
        container_id: Container that owns the scoped entity
        scope_type: SUBCONTAINER or ITEM
        scope_id: Sub-container or item id
        permissions: Authoritative permission set at this scope
        assigned_at: When the grant was written (ms)
    """

    user_id: str
    container_id: str
    scope_type: ScopeType
    scope_id: str
    permissions: PermissionSet
    assigned_at: int = 0

    @property
    def id(self) -> str:
        return grant_id(self.scope_type, self.scope_id, self.user_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a store document."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "container_id": self.container_id,
            "scope_type": self.scope_type.value,
            "scope_id": self.scope_id,
            "permissions": self.permissions.to_dict(),
            "assigned_at": self.assigned_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionGrant:
        return cls(
            user_id=str(data["user_id"]),
            container_id=str(data["container_id"]),
            scope_type=ScopeType(str(data["scope_type"]).upper()),
            scope_id=str(data["scope_id"]),
            permissions=PermissionSet.from_dict(data.get("permissions")),
            assigned_at=int(data.get("assigned_at") or 0),
        )
