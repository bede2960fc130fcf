"""
Data model for vaultsync: resource tree, permissions, memberships, grants.
"""

from .entities import (
    Container,
    EntityKind,
    EntityRef,
    Item,
    Resource,
    SubContainer,
    entity_from_dict,
    now_ms,
)
from .membership import (
    Membership,
    MembershipRole,
    MembershipStatus,
    PermissionGrant,
    ScopeType,
    grant_id,
)
from .permissions import Permission, PermissionSet, normalize_role

__all__ = [
    "Container",
    "EntityKind",
    "EntityRef",
    "Item",
    "Resource",
    "SubContainer",
    "entity_from_dict",
    "now_ms",
    "Membership",
    "MembershipRole",
    "MembershipStatus",
    "PermissionGrant",
    "ScopeType",
    "grant_id",
    "Permission",
    "PermissionSet",
    "normalize_role",
]
