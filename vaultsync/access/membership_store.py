"""
Membership store: per-(container, user) role records.

Holds the locally cached Membership rows that the resolver reads, and
writes changes through to ``containers/{id}/memberships/{user_id}``.

Invariants:
    - At most one cached row per (container_id, user_id)
    - replace_container() swaps a container's rows wholesale so remote
      deletions propagate; upsert() never removes rows
    - revoke() keeps the row with status=REVOKED; rows are never deleted
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import NotFoundError
from ..model.entities import MEMBERSHIPS, child_collection_path
from ..model.membership import Membership, MembershipRole, MembershipStatus
from ..store.base import DocumentStore, WriteOp

logger = logging.getLogger(__name__)


def membership_path(container_id: str, user_id: str) -> str:
    return f"{child_collection_path(container_id, MEMBERSHIPS)}/{user_id}"


def parse_memberships(container_id: str, docs: list[dict[str, Any]]) -> list[Membership]:
    """Convert store documents, dropping malformed rows."""
    rows = []
    for doc in docs:
        try:
            rows.append(Membership.from_dict({"container_id": container_id, **doc}))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                f"Dropping malformed membership: {e}",
                extra={"container_id": container_id, "doc_id": doc.get("id")},
            )
    return rows


class MembershipStore:
    """Local membership cache with write-through to the document store."""

    def __init__(self, store: DocumentStore | None = None) -> None:
        self.store = store
        self._rows: dict[str, dict[str, Membership]] = {}

    # Local cache

    def get(self, container_id: str, user_id: str) -> Membership | None:
        return self._rows.get(container_id, {}).get(user_id)

    def for_container(self, container_id: str) -> list[Membership]:
        return list(self._rows.get(container_id, {}).values())

    def for_user(self, user_id: str) -> list[Membership]:
        return [rows[user_id] for rows in self._rows.values() if user_id in rows]

    def owners(self, container_id: str) -> list[Membership]:
        return [m for m in self.for_container(container_id) if m.is_active_owner]

    def upsert(self, membership: Membership) -> None:
        self._rows.setdefault(membership.container_id, {})[membership.user_id] = membership

    def replace_container(self, container_id: str, rows: list[Membership]) -> None:
        """Replace every cached row of one container with a full snapshot."""
        self._rows[container_id] = {m.user_id: m for m in rows}

    def purge_container(self, container_id: str) -> None:
        self._rows.pop(container_id, None)

    def container_ids(self) -> list[str]:
        return list(self._rows)

    # Write-through

    def _require_store(self) -> DocumentStore:
        if self.store is None:
            raise RuntimeError("MembershipStore has no document store attached")
        return self.store

    @staticmethod
    def write_op(membership: Membership) -> WriteOp:
        """Upsert operation for use inside a batch."""
        return WriteOp.set(
            membership_path(membership.container_id, membership.user_id),
            membership.to_dict(),
        )

    async def save(self, membership: Membership) -> Membership:
        """Upsert a row in the store and the cache."""
        await self._require_store().batch([self.write_op(membership)])
        self.upsert(membership)
        return membership

    async def revoke(self, container_id: str, user_id: str, revoked_at: int) -> Membership:
        """Mark a membership REVOKED, keeping the row.

        Raises:
            NotFoundError: If the user has no membership row
        """
        store = self._require_store()
        path = membership_path(container_id, user_id)
        doc = await store.get(path)
        if doc is None:
            raise NotFoundError(f"Membership not found: {path}", path)
        current = Membership.from_dict({"container_id": container_id, **doc})
        revoked = Membership(
            container_id=current.container_id,
            user_id=current.user_id,
            role=current.role,
            permissions=current.permissions,
            status=MembershipStatus.REVOKED,
            assigned_at=current.assigned_at,
            revoked_at=revoked_at,
        )
        await store.batch([self.write_op(revoked)])
        self.upsert(revoked)
        return revoked

    async def fetch(self, container_id: str) -> list[Membership]:
        """Read a container's rows from the store and replace the cache."""
        docs = await self._require_store().query(child_collection_path(container_id, MEMBERSHIPS))
        rows = parse_memberships(container_id, docs)
        self.replace_container(container_id, rows)
        return rows

    async def owned_container_ids(self, user_id: str) -> list[str]:
        """Containers where the user holds an ACTIVE OWNER row (store query)."""
        docs = await self._require_store().query_group(
            MEMBERSHIPS,
            where={
                "user_id": user_id,
                "role": MembershipRole.OWNER.value,
                "status": MembershipStatus.ACTIVE.value,
            },
        )
        return list(dict.fromkeys(str(d["container_id"]) for d in docs if d.get("container_id")))

    async def delegated_container_ids(self, user_id: str) -> list[str]:
        """Containers shared with the user through an ACTIVE DELEGATE row."""
        docs = await self._require_store().query_group(
            MEMBERSHIPS,
            where={
                "user_id": user_id,
                "role": MembershipRole.DELEGATE.value,
                "status": MembershipStatus.ACTIVE.value,
            },
        )
        return list(dict.fromkeys(str(d["container_id"]) for d in docs if d.get("container_id")))
