"""
Resource tree data model for vaultsync.

Three entity kinds form a strict hierarchy:
    Container ─┬─ SubContainer
               └─ Item (optionally inside one SubContainer)

Every entity is stored under its owning container:
    containers/{id}
    containers/{id}/subcontainers/{id}
    containers/{id}/items/{id}

Invariants:
    - Display names are at most NAME_MAX_LENGTH characters
    - At most MEDIA_MAX_COUNT media references are kept
    - primary_media is a member of media, else the first reference, else None
    - Timestamps are integer milliseconds

How to change safely:
    - New document fields must default sensibly in from_dict()
    - Keep to_dict()/from_dict() symmetric
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

NAME_MAX_LENGTH = 35
MEDIA_MAX_COUNT = 4

CONTAINERS = "containers"
SUBCONTAINERS = "subcontainers"
ITEMS = "items"
MEMBERSHIPS = "memberships"
GRANTS = "grants"
AUDIT_EVENTS = "auditEvents"


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def clamp_name(value: Any) -> str:
    """Clamp a display name to NAME_MAX_LENGTH characters."""
    text = "" if value is None else str(value)
    return text[:NAME_MAX_LENGTH]


def normalize_media(
    media: list[Any] | None,
    primary: str | None = None,
) -> tuple[list[str], str | None]:
    """Drop empty references, keep the first four, and pick a primary.

    Returns:
        Tuple of (media, primary_media)
    """
    refs = [str(m) for m in (media or []) if m][:MEDIA_MAX_COUNT]
    if primary and primary in refs:
        return refs, primary
    return refs, (refs[0] if refs else None)


class EntityKind(Enum):
    """The three levels of the resource tree."""

    CONTAINER = "CONTAINER"
    SUBCONTAINER = "SUBCONTAINER"
    ITEM = "ITEM"

    @property
    def collection(self) -> str:
        return {
            EntityKind.CONTAINER: CONTAINERS,
            EntityKind.SUBCONTAINER: SUBCONTAINERS,
            EntityKind.ITEM: ITEMS,
        }[self]


def container_path(container_id: str) -> str:
    return f"{CONTAINERS}/{container_id}"


def child_collection_path(container_id: str, collection: str) -> str:
    return f"{CONTAINERS}/{container_id}/{collection}"


@dataclass(frozen=True)
class EntityRef:
    """Address of one entity in the tree.

    Attributes:
        kind: Entity kind
        container_id: Owning container (the entity itself for containers)
        entity_id: Entity identifier
    """

    kind: EntityKind
    container_id: str
    entity_id: str

    @classmethod
    def container(cls, container_id: str) -> EntityRef:
        return cls(EntityKind.CONTAINER, container_id, container_id)

    @classmethod
    def sub_container(cls, container_id: str, sub_container_id: str) -> EntityRef:
        return cls(EntityKind.SUBCONTAINER, container_id, sub_container_id)

    @classmethod
    def item(cls, container_id: str, item_id: str) -> EntityRef:
        return cls(EntityKind.ITEM, container_id, item_id)

    @property
    def path(self) -> str:
        if self.kind is EntityKind.CONTAINER:
            return container_path(self.container_id)
        return f"{child_collection_path(self.container_id, self.kind.collection)}/{self.entity_id}"

    def __str__(self) -> str:
        return self.path


@dataclass
class Resource:
    """Fields shared by every tree entity.

    Attributes:
        id: Entity identifier
        name: Display name (clamped)
        description: Free text
        media: Up to four media references
        primary_media: Designated primary reference
        created_at: Creation timestamp (ms)
        viewed_at: Last view timestamp (ms)
        edited_at: Last edit timestamp (ms), used for optimistic concurrency
        owner_id: Legacy owner-of-record user id
    """

    id: str
    name: str = ""
    description: str = ""
    media: list[str] = field(default_factory=list)
    primary_media: str | None = None
    created_at: int = 0
    viewed_at: int = 0
    edited_at: int = 0
    owner_id: str | None = None

    kind = EntityKind.CONTAINER

    def __post_init__(self) -> None:
        self.name = clamp_name(self.name)
        self.media, self.primary_media = normalize_media(self.media, self.primary_media)

    @property
    def container_key(self) -> str:
        """Container this entity belongs to."""
        return self.id

    def ref(self) -> EntityRef:
        return EntityRef(self.kind, self.container_key, self.id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a store document."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "media": list(self.media),
            "primary_media": self.primary_media,
            "created_at": self.created_at,
            "viewed_at": self.viewed_at,
            "edited_at": self.edited_at,
            "owner_id": self.owner_id,
        }

    @staticmethod
    def _common(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": str(data["id"]),
            "name": data.get("name") or data.get("title") or "",
            "description": data.get("description") or "",
            "media": list(data.get("media") or []),
            "primary_media": data.get("primary_media"),
            "created_at": int(data.get("created_at") or 0),
            "viewed_at": int(data.get("viewed_at") or 0),
            "edited_at": int(data.get("edited_at") or 0),
            "owner_id": data.get("owner_id"),
        }


@dataclass
class Container(Resource):
    """Top-level resource."""

    kind = EntityKind.CONTAINER

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Container:
        return cls(**cls._common(data))


@dataclass
class SubContainer(Resource):
    """Middle-level resource belonging to exactly one container."""

    container_id: str = ""

    kind = EntityKind.SUBCONTAINER

    @property
    def container_key(self) -> str:
        return self.container_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["container_id"] = self.container_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubContainer:
        return cls(container_id=str(data.get("container_id") or ""), **cls._common(data))


@dataclass
class Item(Resource):
    """Leaf resource, inside one container and optionally one sub-container."""

    container_id: str = ""
    sub_container_id: str | None = None

    kind = EntityKind.ITEM

    @property
    def container_key(self) -> str:
        return self.container_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["container_id"] = self.container_id
        data["sub_container_id"] = self.sub_container_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Item:
        return cls(
            container_id=str(data.get("container_id") or ""),
            sub_container_id=data.get("sub_container_id"),
            **cls._common(data),
        )


ENTITY_TYPES: dict[EntityKind, type[Resource]] = {
    EntityKind.CONTAINER: Container,
    EntityKind.SUBCONTAINER: SubContainer,
    EntityKind.ITEM: Item,
}


def entity_from_dict(kind: EntityKind, data: dict[str, Any]) -> Resource:
    """Convert a store document into the typed entity for ``kind``."""
    return ENTITY_TYPES[kind].from_dict(data)  # type: ignore[attr-defined]
