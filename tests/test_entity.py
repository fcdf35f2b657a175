"""Tests for entities and the entity tree."""

import pytest

from apporchestra.catalog import EntityTypeRegistry
from apporchestra.entity import Entity, EntityTree
from apporchestra.errors import BadArgument, NotFound


@pytest.fixture
def catalog():
    return EntityTypeRegistry.create_default()


def make_entity(catalog, entity_id, type_tag="noop-service", parent_id="app1"):
    return Entity(
        entity_id=entity_id,
        name=entity_id,
        entry=catalog.resolve(type_tag),
        application_id="app1",
        parent_id=parent_id,
    )


@pytest.fixture
def app_entities(catalog):
    return [
        make_entity(catalog, "app1", "application", parent_id=None),
        make_entity(catalog, "web"),
        make_entity(catalog, "db"),
    ]


class TestEntityTree:
    """Tests for adding, walking and removing application trees."""

    def test_add_all(self, app_entities):
        tree = EntityTree()
        tree.add_all(app_entities)

        assert [e.entity_id for e in tree.applications()] == ["app1"]
        assert [e.entity_id for e in tree.walk("app1")] == ["app1", "web", "db"]
        assert tree.get("web").parent_id == "app1"

    def test_add_all_rejects_id_in_use(self, catalog, app_entities):
        tree = EntityTree()
        tree.add_all(app_entities)
        other = make_entity(catalog, "app2", "application", parent_id=None)
        clash = make_entity(catalog, "web", parent_id="app2")

        with pytest.raises(BadArgument, match="already in use"):
            tree.add_all([other, clash])

        assert not tree.contains("app2")
        assert [e.entity_id for e in tree.applications()] == ["app1"]

    def test_add_all_unknown_parent(self, catalog):
        with pytest.raises(NotFound):
            EntityTree().add_all([make_entity(catalog, "web", parent_id="ghost")])

    def test_remove_application(self, app_entities):
        tree = EntityTree()
        tree.add_all(app_entities)

        removed = tree.remove_application("app1")

        assert {e.entity_id for e in removed} == {"app1", "web", "db"}
        assert tree.all() == []
        with pytest.raises(NotFound):
            tree.get("web")
