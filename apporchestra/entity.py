"""
Entities and the entity tree.

An Entity is a plain record: identity, resolved type, configuration,
lifecycle state, bound location/machine, and its driver instance.
Behaviour lives in the lifecycle engine and the driver.

Locking:
- Entity.lock serializes lifecycle read-modify-write for one entity
- EntityTree.lock is a coarse reader/writer lock; observers walk the tree
  under the read side, create/delete take the write side
"""

import copy
import threading
from typing import Any, Iterator, Optional

from apporchestra.catalog import CatalogEntry
from apporchestra.errors import BadArgument, InternalInvariant, NotFound, PreconditionFailed
from apporchestra.machines import MachineHandle
from apporchestra.schemas import Lifecycle, Location, can_transition
from apporchestra.utils import ReadWriteLock


class Entity:
    """
    A managed software component.

    Config values supplied at construction are immutable; other declared
    keys may be set until the entity leaves UNINITIALIZED.
    """

    def __init__(
        self,
        entity_id: str,
        name: str,
        entry: CatalogEntry,
        application_id: str,
        config: Optional[dict[str, Any]] = None,
        parent_id: Optional[str] = None,
        locations: tuple[str, ...] = (),
    ):
        if entry.abstract:
            raise BadArgument(f"Entity type '{entry.type_tag}' is abstract and cannot be created")

        self.entity_id = entity_id
        self.name = name
        self.entry = entry
        self.type_tag = entry.type_tag
        self.type = entry.resolved
        self.application_id = application_id
        self.parent_id = parent_id
        self.children: list[str] = []
        self.locations = tuple(locations)

        given = dict(config or {})
        declared = self.type.config_keys
        unknown = sorted(set(given) - set(declared))
        if unknown:
            raise BadArgument(f"Entity {entity_id} ({self.type_tag}): unknown config key(s) {unknown}")
        for key, value in given.items():
            declared[key].validate(value)

        self._config = {name: copy.deepcopy(key.default) for name, key in declared.items()}
        self._config.update(copy.deepcopy(given))
        self._fixed_keys = frozenset(given)

        self.state = Lifecycle.UNINITIALIZED
        self.location: Optional[Location] = None
        self.machine: Optional[MachineHandle] = None
        self.started_locations: tuple[str, ...] = ()
        self.driver = entry.driver_factory() if entry.driver_factory is not None else None
        self.lock = threading.RLock()

    @property
    def driverless(self) -> bool:
        return self.driver is None

    @property
    def config(self) -> dict[str, Any]:
        """Snapshot of the resolved configuration."""
        with self.lock:
            return copy.deepcopy(self._config)

    def get_config(self, key: str, default: Any = None) -> Any:
        with self.lock:
            value = self._config.get(key)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """
        Update a config value before the entity starts.

        Raises:
            BadArgument: If the key is undeclared or the value mistyped
            PreconditionFailed: If the key was fixed at construction or the
                entity has left UNINITIALIZED
        """
        declared = self.type.config_keys.get(key)
        if declared is None:
            raise BadArgument(f"Entity {self.entity_id}: undeclared config key '{key}'")
        declared.validate(value)
        with self.lock:
            if key in self._fixed_keys:
                raise PreconditionFailed(
                    f"Entity {self.entity_id}: config '{key}' was set at construction"
                )
            if self.state != Lifecycle.UNINITIALIZED:
                raise PreconditionFailed(
                    f"Entity {self.entity_id}: config is frozen in state {self.state.value}"
                )
            self._config[key] = copy.deepcopy(value)

    def transition(self, new_state: Lifecycle) -> Lifecycle:
        """
        Move to ``new_state``; the caller must hold ``lock``.

        Returns:
            The previous state

        Raises:
            InternalInvariant: If the transition is not allowed
        """
        old = self.state
        if not can_transition(old, new_state):
            raise InternalInvariant(
                f"Entity {self.entity_id}: illegal transition {old.value} -> {new_state.value}"
            )
        self.state = new_state
        return old

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for persistence and tree views."""
        with self.lock:
            return {
                "id": self.entity_id,
                "name": self.name,
                "type": self.type_tag,
                "application": self.application_id,
                "parent": self.parent_id,
                "children": list(self.children),
                "config": copy.deepcopy(self._config),
                "fixed_config": sorted(self._fixed_keys),
                "locations": list(self.locations),
                "started_locations": list(self.started_locations),
                "state": self.state.value,
                "location": self.location.location_id if self.location else None,
                "machine": self.machine.to_dict() if self.machine else None,
            }

    def __repr__(self) -> str:
        return f"Entity(id={self.entity_id}, type={self.type_tag}, state={self.state.value})"


class EntityTree:
    """
    Registry of entity id -> entity, organised as application trees.

    Public methods take the appropriate side of ``lock``; the underscore
    variants assume the caller already holds it.
    """

    def __init__(self) -> None:
        self.lock = ReadWriteLock()
        self._entities: dict[str, Entity] = {}
        self._applications: list[str] = []

    def _add(self, entity: Entity) -> None:
        if entity.entity_id in self._entities:
            raise BadArgument(f"Duplicate entity id: {entity.entity_id}")
        if entity.parent_id is not None:
            parent = self._entities.get(entity.parent_id)
            if parent is None:
                raise NotFound(f"Unknown parent entity: {entity.parent_id}")
            parent.children.append(entity.entity_id)
        else:
            self._applications.append(entity.entity_id)
        self._entities[entity.entity_id] = entity

    def _has(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def _get(self, entity_id: str) -> Entity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise NotFound(f"Unknown entity: {entity_id}")
        return entity

    def _walk(self, entity_id: str) -> Iterator[Entity]:
        entity = self._get(entity_id)
        yield entity
        for child_id in list(entity.children):
            yield from self._walk(child_id)

    def _remove_application(self, application_id: str) -> list[Entity]:
        removed = list(self._walk(application_id))
        for entity in removed:
            del self._entities[entity.entity_id]
        self._applications.remove(application_id)
        return removed

    def contains(self, entity_id: str) -> bool:
        with self.lock.read():
            return entity_id in self._entities

    def add_all(self, entities: list[Entity]) -> None:
        """
        Add entities (parents before children) as one write.

        Raises:
            BadArgument: If any id is already in use (nothing is added)
        """
        with self.lock.write():
            for entity in entities:
                if self._has(entity.entity_id):
                    raise BadArgument(f"Entity id already in use: {entity.entity_id}")
            for entity in entities:
                self._add(entity)

    def remove_application(self, application_id: str) -> list[Entity]:
        """Remove an application and all its descendants; returns what was removed."""
        with self.lock.write():
            return self._remove_application(application_id)

    def get(self, entity_id: str) -> Entity:
        """
        Get an entity by id.

        Raises:
            NotFound: If the entity is unknown
        """
        with self.lock.read():
            return self._get(entity_id)

    def get_application(self, application_id: str) -> Entity:
        """
        Get an application root.

        Raises:
            NotFound: If no application has this id
        """
        with self.lock.read():
            if application_id not in self._applications:
                raise NotFound(f"Unknown application: {application_id}")
            return self._entities[application_id]

    def parent(self, entity: Entity) -> Optional[Entity]:
        if entity.parent_id is None:
            return None
        return self.get(entity.parent_id)

    def children(self, entity: Entity) -> list[Entity]:
        """Children in declared order."""
        with self.lock.read():
            return [self._entities[c] for c in entity.children if c in self._entities]

    def walk(self, entity_id: str) -> list[Entity]:
        """The subtree rooted at ``entity_id``, depth-first, parents first."""
        with self.lock.read():
            return list(self._walk(entity_id))

    def applications(self) -> list[Entity]:
        with self.lock.read():
            return [self._entities[a] for a in self._applications]

    def all(self) -> list[Entity]:
        with self.lock.read():
            return list(self._entities.values())

    def tree(self, entity_id: str) -> dict[str, Any]:
        """Nested view of a subtree: id, name, type, state, location, children."""
        with self.lock.read():
            return self._tree(self._get(entity_id))

    def _tree(self, entity: Entity) -> dict[str, Any]:
        return {
            "id": entity.entity_id,
            "name": entity.name,
            "type": entity.type_tag,
            "state": entity.state.value,
            "location": entity.location.location_id if entity.location else None,
            "hostname": entity.machine.hostname if entity.machine else None,
            "children": [self._tree(self._entities[c]) for c in entity.children if c in self._entities],
        }
