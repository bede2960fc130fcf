"""
Document store abstraction for vaultsync.

This module provides a pluggable backend interface for the remote
authoritative store the core reconciles against:
- InMemoryDocumentStore (tests, local development)
- SqliteDocumentStore (single-file persistence)

Invariants:
    - Transactions and batches are atomic
    - Live listeners receive full snapshots after commit
    - Transport failures surface as StoreUnavailableError, never retried here

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Run the shared store tests against every backend
"""

from .base import (
    DocumentStore,
    ListenerHandle,
    Snapshot,
    Transaction,
    WriteKind,
    WriteOp,
    create_document_store,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    # Protocol and types
    "DocumentStore",
    "ListenerHandle",
    "Snapshot",
    "Transaction",
    "WriteKind",
    "WriteOp",
    # Factory
    "create_document_store",
    # Implementations
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
