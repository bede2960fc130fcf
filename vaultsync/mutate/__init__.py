"""
Mutation coordination for the resource tree.
"""

from .coordinator import (
    PROTECTED_FIELDS,
    DeleteResult,
    MutationCoordinator,
    MutationResult,
    TransferResult,
)
from .diff import diff_for_update, normalize_value, truncate

__all__ = [
    "PROTECTED_FIELDS",
    "DeleteResult",
    "MutationCoordinator",
    "MutationResult",
    "TransferResult",
    "diff_for_update",
    "normalize_value",
    "truncate",
]
