"""
Grant store: scoped permission overrides.

Grants live under ``containers/{id}/grants/{SCOPE:scope_id:user_id}``; the
id encodes the (scope_type, scope_id, user_id) triple so a second write
for the same triple replaces the first.
"""

from __future__ import annotations

import logging
from typing import Any

from ..model.entities import GRANTS, child_collection_path
from ..model.membership import PermissionGrant, ScopeType, grant_id
from ..store.base import DocumentStore, WriteOp

logger = logging.getLogger(__name__)


def grant_path(container_id: str, gid: str) -> str:
    return f"{child_collection_path(container_id, GRANTS)}/{gid}"


def parse_grants(container_id: str, docs: list[dict[str, Any]]) -> list[PermissionGrant]:
    """Convert store documents, dropping malformed rows."""
    grants = []
    for doc in docs:
        try:
            grants.append(PermissionGrant.from_dict({"container_id": container_id, **doc}))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                f"Dropping malformed grant: {e}",
                extra={"container_id": container_id, "doc_id": doc.get("id")},
            )
    return grants


class GrantStore:
    """Local grant cache with write-through to the document store."""

    def __init__(self, store: DocumentStore | None = None) -> None:
        self.store = store
        self._grants: dict[str, dict[str, PermissionGrant]] = {}
        # grant id -> container id, for lookups that only know the scope
        self._index: dict[str, str] = {}

    def get(self, scope_type: ScopeType, scope_id: str, user_id: str) -> PermissionGrant | None:
        gid = grant_id(scope_type, scope_id, user_id)
        container_id = self._index.get(gid)
        if container_id is None:
            return None
        return self._grants.get(container_id, {}).get(gid)

    def for_container(self, container_id: str) -> list[PermissionGrant]:
        return list(self._grants.get(container_id, {}).values())

    def for_scope(self, scope_type: ScopeType, scope_id: str) -> list[PermissionGrant]:
        return [
            g
            for grants in self._grants.values()
            for g in grants.values()
            if g.scope_type is scope_type and g.scope_id == scope_id
        ]

    def upsert(self, grant: PermissionGrant) -> None:
        self._grants.setdefault(grant.container_id, {})[grant.id] = grant
        self._index[grant.id] = grant.container_id

    def discard(self, grant: PermissionGrant) -> None:
        self._grants.get(grant.container_id, {}).pop(grant.id, None)
        if self._index.get(grant.id) == grant.container_id:
            del self._index[grant.id]

    def replace_container(self, container_id: str, grants: list[PermissionGrant]) -> None:
        """Replace every cached grant of one container with a full snapshot."""
        self.purge_container(container_id)
        self._grants[container_id] = {}
        for g in grants:
            self.upsert(g)

    def purge_container(self, container_id: str) -> None:
        for gid in self._grants.pop(container_id, {}):
            if self._index.get(gid) == container_id:
                del self._index[gid]

    # Write-through

    def _require_store(self) -> DocumentStore:
        if self.store is None:
            raise RuntimeError("GrantStore has no document store attached")
        return self.store

    @staticmethod
    def write_op(grant: PermissionGrant) -> WriteOp:
        return WriteOp.set(grant_path(grant.container_id, grant.id), grant.to_dict())

    @staticmethod
    def delete_op(grant: PermissionGrant) -> WriteOp:
        return WriteOp.delete(grant_path(grant.container_id, grant.id))

    async def save(self, grant: PermissionGrant) -> PermissionGrant:
        await self._require_store().batch([self.write_op(grant)])
        self.upsert(grant)
        return grant

    async def remove(self, grant: PermissionGrant) -> None:
        await self._require_store().batch([self.delete_op(grant)])
        self.discard(grant)

    async def fetch(self, container_id: str) -> list[PermissionGrant]:
        """Read a container's grants from the store and replace the cache."""
        docs = await self._require_store().query(child_collection_path(container_id, GRANTS))
        grants = parse_grants(container_id, docs)
        self.replace_container(container_id, grants)
        return grants

    async def load(self, container_id: str, gid: str) -> PermissionGrant | None:
        """Point read of one grant from the store."""
        doc = await self._require_store().get(grant_path(container_id, gid))
        if doc is None:
            return None
        return PermissionGrant.from_dict({"container_id": container_id, **doc})
