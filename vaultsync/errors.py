"""
Error types for vaultsync.

This module defines all exception types raised by the core:
- VaultSyncError: Base exception
- NotFoundError: Target entity absent at mutation time
- ConflictError: Optimistic-concurrency mismatch
- AccessDeniedError: Permission check failed upstream of a mutation
- StoreUnavailableError: Document store transport/connectivity failure
- ValidationError: Caller supplied malformed input

Invariants:
    - All errors inherit from VaultSyncError
    - Errors include context for debugging
    - A skipped audit write is a result flag, never an exception
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VaultSyncError(Exception):
    """Base exception for all vaultsync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "VAULTSYNC_ERROR"
        self.details = details or {}


class NotFoundError(VaultSyncError):
    """Entity not found.

    Raised when:
    - A mutation targets a document that does not exist
    - A create references a missing parent container or sub-container
    """

    def __init__(self, message: str, path: str) -> None:
        super().__init__(message, code="NOT_FOUND", details={"path": path})
        self.path = path


class ConflictError(VaultSyncError):
    """Optimistic-concurrency mismatch.

    Carries the entity's current ``edited_at`` so the caller can offer a
    reload-and-retry flow. Never resolved automatically.
    """

    def __init__(
        self,
        path: str,
        expected_edited_at: int,
        current_edited_at: int | None,
    ) -> None:
        super().__init__(
            f"Conflict on {path}: expected edited_at={expected_edited_at}, "
            f"current={current_edited_at}",
            code="CONFLICT",
            details={
                "path": path,
                "expected_edited_at": expected_edited_at,
                "current_edited_at": current_edited_at,
            },
        )
        self.path = path
        self.expected_edited_at = expected_edited_at
        self.current_edited_at = current_edited_at


class AccessDeniedError(VaultSyncError):
    """Access denied.

    Raised by callers that gate a mutation on the resolver, never by the
    mutation coordinator itself.
    """

    def __init__(
        self,
        user_id: str,
        container_id: str,
        permission: str,
        scope_id: str | None = None,
    ) -> None:
        target = scope_id or container_id
        super().__init__(
            f"Access denied: {user_id} lacks {permission} on {target}",
            code="ACCESS_DENIED",
            details={
                "user_id": user_id,
                "container_id": container_id,
                "scope_id": scope_id,
                "permission": permission,
            },
        )
        self.user_id = user_id
        self.container_id = container_id
        self.permission = permission
        self.scope_id = scope_id


class StoreUnavailableError(VaultSyncError):
    """The document store could not be reached or failed mid-operation.

    Surfaced to the caller; never retried internally.
    """

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="STORE_UNAVAILABLE",
            details={"operation": operation},
        )
        self.operation = operation


class ValidationError(VaultSyncError):
    """Caller input failed validation."""

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name
