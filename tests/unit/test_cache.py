"""
Unit tests for the local cache.
"""

from vaultsync.model.entities import Container, EntityKind, Item, SubContainer
from vaultsync.sync.cache import LocalCache, merge_by_id, parse_entities


class TestMergeById:
    """Tests for merge_by_id."""

    def test_replaces_in_place_and_appends(self):
        merged = merge_by_id(
            [{"id": 1, "v": "a"}, {"id": 2, "v": "b"}],
            [{"id": 2, "v": "B"}, {"id": 3, "v": "c"}],
        )
        assert merged == [{"id": 1, "v": "a"}, {"id": 2, "v": "B"}, {"id": 3, "v": "c"}]

    def test_never_removes(self):
        merged = merge_by_id([{"id": 1}, {"id": 2}], [])
        assert merged == [{"id": 1}, {"id": 2}]

    def test_works_on_entities(self):
        merged = merge_by_id([Container(id="c1", name="Old")], [Container(id="c1", name="New")])
        assert [c.name for c in merged] == ["New"]

    def test_custom_key(self):
        merged = merge_by_id([("a", 1)], [("a", 2), ("b", 3)], key=lambda t: t[0])
        assert merged == [("a", 2), ("b", 3)]


class TestParseEntities:
    """Tests for parse_entities."""

    def test_malformed_documents_are_dropped(self):
        docs = [{"id": "i1", "name": "Lamp", "container_id": "c1"}, {"name": "no id"}]
        items = parse_entities(EntityKind.ITEM, docs)
        assert [i.id for i in items] == ["i1"]

    def test_legacy_title(self):
        [item] = parse_entities(EntityKind.ITEM, [{"id": "i1", "title": "Lamp"}])
        assert item.name == "Lamp"


class TestLocalCache:
    """Tests for LocalCache."""

    def test_replace_children_drops_missing(self):
        cache = LocalCache()
        cache.replace_children("c1", EntityKind.ITEM, [Item(id="i1", container_id="c1")])
        cache.replace_children("c1", EntityKind.ITEM, [Item(id="i2", container_id="c1")])
        assert [i.id for i in cache.items("c1")] == ["i2"]

    def test_items_filter_by_sub_container(self):
        cache = LocalCache()
        cache.replace_children(
            "c1",
            EntityKind.ITEM,
            [
                Item(id="i1", container_id="c1"),
                Item(id="i2", container_id="c1", sub_container_id="s1"),
            ],
        )
        assert [i.id for i in cache.items("c1", "s1")] == ["i2"]
        assert len(cache.items("c1")) == 2

    def test_purge_container(self):
        cache = LocalCache()
        cache.replace_children("c1", EntityKind.SUBCONTAINER, [SubContainer(id="s1", container_id="c1")])
        cache.replace_children("c2", EntityKind.SUBCONTAINER, [SubContainer(id="s2", container_id="c2")])

        cache.purge_container("c1")

        assert cache.has_children("c1") is False
        assert cache.sub_containers("c1") == []
        assert [s.id for s in cache.sub_containers("c2")] == ["s2"]

    def test_owner_of(self):
        cache = LocalCache()
        cache.put_container(Container(id="c1", owner_id="u1"))
        assert cache.owner_of("c1") == "u1"
        assert cache.owner_of("c2") is None
        cache.remove_container("c1")
        assert cache.containers() == []
