"""
Local cache of the resource tree.

Two update modes:
- replace_children(): a full snapshot replaces the cached subset of one
  container, which is how remote deletions propagate
- merge_by_id(): identity-preserving upsert for combining overlapping
  query results; never removes entries missing from the incoming batch
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, TypeVar

from ..model.entities import Container, EntityKind, Item, Resource, SubContainer, entity_from_dict

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _default_key(entry: Any) -> Any:
    if isinstance(entry, dict):
        return entry.get("id")
    return getattr(entry, "id", None)


def merge_by_id(
    existing: Iterable[T],
    incoming: Iterable[T],
    key: Callable[[T], Any] = _default_key,
) -> list[T]:
    """Upsert ``incoming`` into ``existing`` by id.

    Entries with a known id are replaced in place; new ids are appended in
    arrival order. Nothing is ever removed.

    Example:
        >>> merge_by_id([{"id": 1, "v": "a"}], [{"id": 1, "v": "b"}, {"id": 2}])
        [{'id': 1, 'v': 'b'}, {'id': 2}]
    """
    merged = list(existing)
    index = {key(e): i for i, e in enumerate(merged)}
    for entry in incoming:
        k = key(entry)
        if k in index:
            merged[index[k]] = entry
        else:
            index[k] = len(merged)
            merged.append(entry)
    return merged


def parse_entities(kind: EntityKind, docs: Iterable[dict[str, Any]]) -> list[Resource]:
    """Convert store documents, dropping malformed ones."""
    out = []
    for doc in docs:
        try:
            out.append(entity_from_dict(kind, doc))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed {kind.value} document: {e}", extra={"doc_id": doc.get("id")})
    return out


class LocalCache:
    """Cached containers, sub-containers and items of the live view."""

    def __init__(self) -> None:
        self._containers: list[Container] = []
        self._children: dict[EntityKind, dict[str, list[Resource]]] = {
            EntityKind.SUBCONTAINER: {},
            EntityKind.ITEM: {},
        }

    # Containers

    def merge_containers(self, containers: Iterable[Container]) -> None:
        self._containers = merge_by_id(self._containers, containers)

    def put_container(self, container: Container) -> None:
        self.merge_containers([container])

    def remove_container(self, container_id: str) -> None:
        self._containers = [c for c in self._containers if c.id != container_id]

    def container(self, container_id: str) -> Container | None:
        for c in self._containers:
            if c.id == container_id:
                return c
        return None

    def containers(self) -> list[Container]:
        return list(self._containers)

    def owner_of(self, container_id: str) -> str | None:
        """Owner-of-record of a cached container."""
        c = self.container(container_id)
        return c.owner_id if c is not None else None

    # Children

    def replace_children(self, container_id: str, kind: EntityKind, entities: list[Resource]) -> None:
        """Replace the cached children of one kind for one container."""
        self._children[kind][container_id] = list(entities)

    def purge_container(self, container_id: str) -> None:
        """Drop a container's cached children."""
        for by_container in self._children.values():
            by_container.pop(container_id, None)

    def sub_containers(self, container_id: str) -> list[SubContainer]:
        return list(self._children[EntityKind.SUBCONTAINER].get(container_id, []))  # type: ignore[arg-type]

    def items(self, container_id: str, sub_container_id: str | None = None) -> list[Item]:
        items: list[Item] = list(self._children[EntityKind.ITEM].get(container_id, []))  # type: ignore[arg-type]
        if sub_container_id is not None:
            items = [i for i in items if i.sub_container_id == sub_container_id]
        return items

    def has_children(self, container_id: str) -> bool:
        return any(container_id in by_container for by_container in self._children.values())
