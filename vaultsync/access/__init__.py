"""
Access control for vaultsync: membership and grant caches plus the resolver.
"""

from .grant_store import GrantStore, grant_path
from .membership_store import MembershipStore, membership_path
from .resolver import Capabilities, PermissionResolver, role_for

__all__ = [
    "Capabilities",
    "GrantStore",
    "MembershipStore",
    "PermissionResolver",
    "grant_path",
    "membership_path",
    "role_for",
]
