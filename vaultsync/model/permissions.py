"""
Permission vocabulary for vaultsync.

Defines:
- Permission: the six independent capabilities
- PermissionSet: immutable capability vector
- Role label helpers used by administrative UIs

Invariants:
    - The empty PermissionSet grants nothing
    - Unknown role labels degrade to ``reviewer``
    - Serialised keys are the capitalised permission names ("View", ...)
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any


class Permission(Enum):
    """Capabilities that can be granted on a scope."""

    VIEW = "View"
    CREATE = "Create"
    EDIT = "Edit"
    MOVE = "Move"
    CLONE = "Clone"
    DELETE = "Delete"

    @classmethod
    def parse(cls, value: str | Permission) -> Permission:
        """Parse a permission name case-insensitively.

        Raises:
            ValueError: If the name is not a known permission
        """
        if isinstance(value, Permission):
            return value
        raw = str(value).strip().lower()
        for perm in cls:
            if perm.value.lower() == raw:
                return perm
        raise ValueError(f"Invalid permission: {value}")


ROLE_OWNER = "owner"
ROLE_MANAGER = "manager"
ROLE_EDITOR = "editor"
ROLE_REVIEWER = "reviewer"

_ROLE_ALIASES = {
    "viewer": ROLE_REVIEWER,
    "reviewer": ROLE_REVIEWER,
    "editor": ROLE_EDITOR,
    "manager": ROLE_MANAGER,
    "owner": ROLE_OWNER,
}


def normalize_role(role: str | None) -> str:
    """Normalize a legacy role label; unknown or empty labels become reviewer."""
    if not role:
        return ROLE_REVIEWER
    return _ROLE_ALIASES.get(str(role).strip().lower(), ROLE_REVIEWER)


@dataclass(frozen=True)
class PermissionSet:
    """Six-boolean capability vector.

    Attributes:
        view: May see the resource
        create: May create children
        edit: May change fields
        move: May re-home the resource
        clone: May duplicate the resource
        delete: May delete the resource
    """

    view: bool = False
    create: bool = False
    edit: bool = False
    move: bool = False
    clone: bool = False
    delete: bool = False

    def allows(self, permission: Permission | str) -> bool:
        """Return the value of a single permission."""
        perm = Permission.parse(permission)
        return bool(getattr(self, perm.name.lower()))

    def granted(self) -> tuple[Permission, ...]:
        """Permissions that are set, in declaration order."""
        return tuple(p for p in Permission if self.allows(p))

    @classmethod
    def full(cls) -> PermissionSet:
        return cls(True, True, True, True, True, True)

    @classmethod
    def view_only(cls) -> PermissionSet:
        return cls(view=True)

    @classmethod
    def from_role(cls, role: str | None, may_create: bool = False) -> PermissionSet:
        """Map a legacy role label plus a "may create children" flag.

        Example:
            >>> PermissionSet.from_role("editor", may_create=True).granted()
            (<Permission.VIEW: 'View'>, <Permission.CREATE: 'Create'>, <Permission.EDIT: 'Edit'>)
        """
        label = normalize_role(role)
        if label == ROLE_OWNER:
            return cls.full()
        if label == ROLE_MANAGER:
            return cls(view=True, create=True, edit=True, move=True, clone=True)
        if label == ROLE_EDITOR:
            return cls(view=True, create=bool(may_create), edit=True)
        return cls.view_only()

    def to_dict(self) -> dict[str, bool]:
        """Convert to dictionary for storage."""
        return {p.value: self.allows(p) for p in Permission}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PermissionSet:
        """Create from a stored dictionary; missing keys are False."""
        if not data:
            return cls()
        values = {}
        for f in fields(cls):
            key = Permission[f.name.upper()].value
            values[f.name] = bool(data.get(key, data.get(f.name, False)))
        return cls(**values)
