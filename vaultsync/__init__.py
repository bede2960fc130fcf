"""
vaultsync - Access-control and live-sync core for a shared resource tree.

A signed-in user sees a tree of Containers holding Sub-Containers and Items,
backed by a remote document store that several users edit concurrently:
- Memberships and scoped grants decide who may do what (access/)
- Mutations run as optimistic, atomic store transactions (mutate/)
- Every successful mutation emits a deduplicated audit event (audit/)
- Ref-counted live channels keep a local cache current (sync/)

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │  UI / HTTP   │────▶│ VaultSession │────▶│  DocumentStore   │
    └──────────────┘     └──────┬───────┘     │ (memory/SQLite)  │
                                │             └────────┬─────────┘
              ┌─────────────────┼──────────────┐       │ snapshots
              ▼                 ▼              ▼       ▼
        ┌──────────┐     ┌────────────┐  ┌──────────────────┐
        │ Resolver │     │ Coordinator│  │ SubscriptionMgr  │
        └──────────┘     └─────┬──────┘  └──────────────────┘
                               ▼
                         ┌──────────┐
                         │ AuditLog │
                         └──────────┘

Invariants:
    - Owners of record always hold every permission
    - The most specific grant decides; there is no fall-through on false
    - edited_at is strictly increasing per entity
    - Audit failures never fail the mutation that triggered them

How to change safely:
    - Keep permission resolution free of store I/O
    - Add new mutations to the coordinator with a matching audit event type
"""

from ._version import __version__

__all__ = ["__version__"]
