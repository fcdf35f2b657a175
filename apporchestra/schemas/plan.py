"""
Plan schema - the declarative description of an application.

A plan is a tree of entity plans. The root defaults to the "application"
type; children inherit their parent's locations unless they declare their
own.

Example (YAML):

    name: app1
    locations: [loc-local]
    children:
      - name: web
        type: noop-service
        config:
          version: "1.0"
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from apporchestra.errors import BadArgument


_KNOWN_KEYS = {"id", "name", "type", "config", "locations", "children"}


@dataclass(frozen=True)
class EntityPlan:
    """
    Plan for one entity and its subtree.

    Attributes:
        name: Display name
        type_tag: Catalog type tag
        entity_id: Optional explicit id (generated when absent)
        config: Config values set at construction (immutable afterwards)
        locations: Location ids this subtree starts in (empty = inherit)
        children: Ordered child plans
    """
    name: str
    type_tag: str
    entity_id: Optional[str] = None
    config: dict[str, Any] = field(default_factory=dict)
    locations: tuple[str, ...] = ()
    children: tuple["EntityPlan", ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_type: Optional[str] = None) -> "EntityPlan":
        """
        Deserialize from dictionary.

        Raises:
            BadArgument: If the plan is malformed
        """
        if not isinstance(data, dict):
            raise BadArgument(f"Entity plan must be a mapping, got {type(data).__name__}")

        unknown = sorted(set(data) - _KNOWN_KEYS)
        if unknown:
            raise BadArgument(f"Unknown plan key(s): {unknown}")

        type_tag = data.get("type", default_type)
        if not type_tag:
            raise BadArgument(f"Entity plan missing 'type': {data}")

        name = data.get("name") or data.get("id") or type_tag

        config = data.get("config") or {}
        if not isinstance(config, dict):
            raise BadArgument(f"Plan '{name}': config must be a mapping")

        locations = data.get("locations") or []
        if isinstance(locations, str):
            locations = [locations]
        if not all(isinstance(loc, str) for loc in locations):
            raise BadArgument(f"Plan '{name}': locations must be ids")

        children = data.get("children") or []
        if not isinstance(children, list):
            raise BadArgument(f"Plan '{name}': children must be a list")

        return cls(
            name=name,
            type_tag=type_tag,
            entity_id=data.get("id"),
            config=dict(config),
            locations=tuple(locations),
            children=tuple(cls.from_dict(child) for child in children),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "type": self.type_tag}
        if self.entity_id is not None:
            result["id"] = self.entity_id
        if self.config:
            result["config"] = dict(self.config)
        if self.locations:
            result["locations"] = list(self.locations)
        if self.children:
            result["children"] = [c.to_dict() for c in self.children]
        return result

    def walk(self):
        """Yield this plan and all descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()


def application_plan(data: dict[str, Any]) -> EntityPlan:
    """Parse a root plan, defaulting the root type to "application"."""
    return EntityPlan.from_dict(data, default_type="application")


def load_plan(path: Path) -> EntityPlan:
    """
    Load an application plan from a YAML (or JSON) file.

    Raises:
        BadArgument: If the file is missing or malformed
    """
    if not path.exists():
        raise BadArgument(f"Plan file not found: {path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise BadArgument(f"Invalid plan YAML in {path}: {e}")
    return application_plan(data or {})
