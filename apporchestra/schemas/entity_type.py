"""
Entity type descriptors - what a type tag declares.

An EntityTypeSpec is the static descriptor registered in the catalog for a
type tag: its config keys (with defaults and types), its sensors, and its
effectors. Specs may name a parent type; the catalog flattens the parent
chain at registration time into a single resolved schema.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from apporchestra.errors import BadArgument
from apporchestra.schemas.lifecycle import Lifecycle


_TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


def check_type(value: Any, type_name: Optional[str]) -> bool:
    """
    Check a value against a declared type name.

    ``None`` and ``"any"`` accept everything. Booleans are not accepted as
    integers or numbers.
    """
    if type_name is None or type_name == "any":
        return True
    if type_name not in _TYPE_CHECKS:
        raise ValueError(f"Unknown type name: {type_name}")
    if isinstance(value, bool) and type_name in ("integer", "number"):
        return False
    return isinstance(value, _TYPE_CHECKS[type_name])


@dataclass(frozen=True)
class ConfigKey:
    """A declared configuration key with default and optional type."""
    name: str
    default: Any = None
    type: Optional[str] = None
    description: str = ""

    def validate(self, value: Any) -> None:
        """Raise BadArgument if ``value`` does not match the declared type."""
        if value is not None and not check_type(value, self.type):
            raise BadArgument(
                f"Config '{self.name}' expects {self.type}, got {type(value).__name__}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "default": self.default,
            "type": self.type,
            "description": self.description,
        }


@dataclass(frozen=True)
class SensorDescriptor:
    """
    A declared sensor.

    coalescing: equal consecutive values produce no notification
    persistent: the value survives an orchestrator restart
    """
    name: str
    type: Optional[str] = None
    description: str = ""
    coalescing: bool = False
    persistent: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "coalescing": self.coalescing,
            "persistent": self.persistent,
        }


@dataclass(frozen=True)
class ParameterSpec:
    """One input parameter of an effector."""
    name: str
    type: Optional[str] = None
    required: bool = False
    default: Any = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "default": self.default,
            "description": self.description,
        }


@dataclass(frozen=True)
class EffectorDescriptor:
    """
    A declared effector (named operation).

    Attributes:
        name: Effector name
        description: Human-readable description
        parameters: Input schema
        returns: Output type name
        idempotent: Whether re-invocation is safe
        exclusive: At most one task with this name runs per entity at once
        allowed_states: States the entity may be in at invocation (None = any)
        method: Driver method implementing the effector (defaults to name)
    """
    name: str
    description: str = ""
    parameters: tuple[ParameterSpec, ...] = ()
    returns: Optional[str] = None
    idempotent: bool = False
    exclusive: bool = False
    allowed_states: Optional[frozenset[Lifecycle]] = None
    method: Optional[str] = None

    def validate_args(self, args: Optional[dict[str, Any]]) -> dict[str, Any]:
        """
        Validate invocation arguments against the input schema.

        Returns:
            Arguments with defaults applied

        Raises:
            BadArgument: On unknown, missing, or mistyped arguments
        """
        args = dict(args or {})
        declared = {p.name: p for p in self.parameters}

        unknown = sorted(set(args) - set(declared))
        if unknown:
            raise BadArgument(f"Effector '{self.name}' got unknown argument(s): {unknown}")

        resolved: dict[str, Any] = {}
        for param in self.parameters:
            if param.name in args:
                value = args[param.name]
                if value is not None and not check_type(value, param.type):
                    raise BadArgument(
                        f"Effector '{self.name}' argument '{param.name}' expects "
                        f"{param.type}, got {type(value).__name__}"
                    )
                resolved[param.name] = value
            elif param.required:
                raise BadArgument(
                    f"Effector '{self.name}' missing required argument '{param.name}'"
                )
            elif param.default is not None:
                resolved[param.name] = param.default
        return resolved

    def allows(self, state: Lifecycle) -> bool:
        return self.allowed_states is None or state in self.allowed_states

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": [p.to_dict() for p in self.parameters],
            "returns": self.returns,
            "idempotent": self.idempotent,
            "exclusive": self.exclusive,
            "allowed_states": (
                sorted(s.value for s in self.allowed_states)
                if self.allowed_states is not None else None
            ),
        }


@dataclass(frozen=True)
class EntityTypeSpec:
    """
    Static descriptor for an entity type tag.

    Attributes:
        type_tag: Name of the type (e.g. "noop-service")
        parent: Optional parent type tag to inherit declarations from
        description: Human-readable description
        config_keys: Declared configuration keys
        sensors: Declared sensors
        effectors: Declared effectors
    """
    type_tag: str
    parent: Optional[str] = None
    description: str = ""
    config_keys: tuple[ConfigKey, ...] = ()
    sensors: tuple[SensorDescriptor, ...] = ()
    effectors: tuple[EffectorDescriptor, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type_tag,
            "parent": self.parent,
            "description": self.description,
            "config_keys": [k.to_dict() for k in self.config_keys],
            "sensors": [s.to_dict() for s in self.sensors],
            "effectors": [e.to_dict() for e in self.effectors],
        }


@dataclass(frozen=True)
class ResolvedType:
    """
    A flattened type: parent chain merged, child declarations win.

    Produced by the catalog at registration time.
    """
    type_tag: str
    lineage: tuple[str, ...]
    description: str
    config_keys: dict[str, ConfigKey] = field(default_factory=dict)
    sensors: dict[str, SensorDescriptor] = field(default_factory=dict)
    effectors: dict[str, EffectorDescriptor] = field(default_factory=dict)

    def is_a(self, type_tag: str) -> bool:
        """True if this type is ``type_tag`` or inherits from it."""
        return type_tag in self.lineage

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type_tag,
            "lineage": list(self.lineage),
            "description": self.description,
            "config_keys": [k.to_dict() for k in self.config_keys.values()],
            "sensors": [s.to_dict() for s in self.sensors.values()],
            "effectors": [e.to_dict() for e in self.effectors.values()],
        }
