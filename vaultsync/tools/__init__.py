"""
CLI tools for vaultsync administration.

This module provides command-line tools for:
- membership: Grant, revoke and transfer container memberships

Invariants:
    - Tools talk to the store directly (no running server required)
    - Writes are dry runs unless explicitly confirmed
"""

from .membership_cli import MembershipCLI

__all__ = ["MembershipCLI"]
