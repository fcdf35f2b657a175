"""
Entity type catalog - type tag -> (resolved descriptor, driver factory).

Replaces class-hierarchy dispatch with a registry. Each registered
EntityTypeSpec may name a parent; at registration the parent chain is
flattened into a ResolvedType, so lookups never walk the hierarchy.

Built-in types:
- entity: root of every type; lifecycle sensors and start/stop/restart
- application: driverless root of an application tree
- group: driverless grouping node
- software-process: abstract base for driven processes
- noop-service: software-process with a NoopDriver
- vanilla-process: software-process driven by config-supplied shell commands
"""

from dataclasses import dataclass
from typing import Callable, Optional

from apporchestra.drivers import Driver, NoopDriver, VanillaProcessDriver
from apporchestra.errors import BadArgument, NotFound
from apporchestra.schemas import (
    ConfigKey,
    EffectorDescriptor,
    EntityTypeSpec,
    Lifecycle,
    ParameterSpec,
    ResolvedType,
    SensorDescriptor,
)
from apporchestra.sensors import (
    CHILDREN_STATE,
    ERROR,
    SERVICE_PROBLEM,
    SERVICE_STATE,
    SERVICE_UP,
)

DriverFactory = Callable[[], Driver]


START_EFFECTOR = EffectorDescriptor(
    name="start",
    description="Start the entity (and its children) in the given locations",
    parameters=(ParameterSpec("locations", type="array", description="Location ids"),),
    idempotent=True,
    exclusive=True,
    allowed_states=frozenset({
        Lifecycle.UNINITIALIZED,
        Lifecycle.STARTING,
        Lifecycle.RUNNING,
        Lifecycle.STOPPED,
    }),
)

STOP_EFFECTOR = EffectorDescriptor(
    name="stop",
    description="Stop the entity (children first) and release its machine",
    idempotent=True,
    exclusive=True,
    allowed_states=frozenset({
        Lifecycle.UNINITIALIZED,
        Lifecycle.RUNNING,
        Lifecycle.STOPPING,
        Lifecycle.STOPPED,
        Lifecycle.ON_FIRE,
        Lifecycle.RECOVERING,
    }),
)

RESTART_EFFECTOR = EffectorDescriptor(
    name="restart",
    description="Restart the process, keeping its machine when RUNNING",
    exclusive=True,
    allowed_states=frozenset({Lifecycle.RUNNING, Lifecycle.STOPPED, Lifecycle.ON_FIRE}),
)

LIFECYCLE_EFFECTORS = ("start", "stop", "restart")


@dataclass(frozen=True)
class CatalogEntry:
    """A registered type: its declaration, flattened schema and driver factory."""
    spec: EntityTypeSpec
    resolved: ResolvedType
    driver_factory: Optional[DriverFactory]
    abstract: bool = False

    @property
    def type_tag(self) -> str:
        return self.spec.type_tag

    @property
    def driverless(self) -> bool:
        return self.driver_factory is None


class EntityTypeRegistry:
    """
    Registry of entity types by tag.

    Usage:
        catalog = EntityTypeRegistry.create_default()
        catalog.register(EntityTypeSpec("mongodb", parent="software-process"), MongoDriver)
        entry = catalog.resolve("mongodb")
    """

    def __init__(self) -> None:
        self._entries: dict[str, CatalogEntry] = {}

    def register(
        self,
        spec: EntityTypeSpec,
        driver_factory: Optional[DriverFactory] = None,
        abstract: bool = False,
    ) -> CatalogEntry:
        """
        Register a type, flattening its parent chain.

        Declarations on the child override same-named parent declarations.
        A type without its own driver factory inherits its parent's.

        Raises:
            BadArgument: If the tag is taken or the parent is unregistered
        """
        if spec.type_tag in self._entries:
            raise BadArgument(f"Entity type already registered: {spec.type_tag}")

        config_keys: dict[str, ConfigKey] = {}
        sensors: dict[str, SensorDescriptor] = {}
        effectors: dict[str, EffectorDescriptor] = {}
        lineage: tuple[str, ...] = (spec.type_tag,)

        if spec.parent is not None:
            parent = self._entries.get(spec.parent)
            if parent is None:
                raise BadArgument(
                    f"Entity type {spec.type_tag}: parent type '{spec.parent}' is not registered"
                )
            config_keys.update(parent.resolved.config_keys)
            sensors.update(parent.resolved.sensors)
            effectors.update(parent.resolved.effectors)
            lineage = (spec.type_tag,) + parent.resolved.lineage
            if driver_factory is None:
                driver_factory = parent.driver_factory

        config_keys.update({k.name: k for k in spec.config_keys})
        sensors.update({s.name: s for s in spec.sensors})
        effectors.update({e.name: e for e in spec.effectors})

        for key in config_keys.values():
            if key.default is not None:
                key.validate(key.default)

        entry = CatalogEntry(
            spec=spec,
            resolved=ResolvedType(
                type_tag=spec.type_tag,
                lineage=lineage,
                description=spec.description,
                config_keys=config_keys,
                sensors=sensors,
                effectors=effectors,
            ),
            driver_factory=driver_factory,
            abstract=abstract,
        )
        self._entries[spec.type_tag] = entry
        return entry

    def resolve(self, type_tag: str) -> CatalogEntry:
        """
        Look up a registered type.

        Raises:
            NotFound: If the tag is unknown
        """
        entry = self._entries.get(type_tag)
        if entry is None:
            raise NotFound(
                f"Unknown entity type: {type_tag}. Registered: {self.list_types()}"
            )
        return entry

    def has(self, type_tag: str) -> bool:
        return type_tag in self._entries

    def list_types(self) -> list[str]:
        return sorted(self._entries)

    @classmethod
    def create_default(cls) -> "EntityTypeRegistry":
        """Create a catalog holding the built-in types."""
        catalog = cls()
        catalog.register(
            EntityTypeSpec(
                type_tag="entity",
                description="Base managed entity",
                sensors=(
                    SensorDescriptor(SERVICE_STATE, "string", "Lifecycle state",
                                     coalescing=True, persistent=True),
                    SensorDescriptor(SERVICE_UP, "boolean", "Whether the service is up",
                                     coalescing=True, persistent=True),
                    SensorDescriptor(SERVICE_PROBLEM, "object", "Last lifecycle problem",
                                     persistent=True),
                    SensorDescriptor(ERROR, "object", "Last recorded error"),
                    SensorDescriptor(CHILDREN_STATE, "object", "Aggregate child states",
                                     coalescing=True, persistent=True),
                ),
                effectors=(START_EFFECTOR, STOP_EFFECTOR, RESTART_EFFECTOR),
            ),
            abstract=True,
        )
        catalog.register(EntityTypeSpec(
            type_tag="application",
            parent="entity",
            description="Root of an application tree",
        ))
        catalog.register(EntityTypeSpec(
            type_tag="group",
            parent="entity",
            description="Grouping node without a process of its own",
        ))
        catalog.register(
            EntityTypeSpec(
                type_tag="software-process",
                parent="entity",
                description="A process installed and run on a machine",
                config_keys=(
                    ConfigKey("version", None, "string", "Software version"),
                    ConfigKey("required_ports", None, "array", "Ports that must be free"),
                    ConfigKey("templates", None, "object",
                              "Run-dir file name -> template URL"),
                    ConfigKey("release_on_error", False, "boolean",
                              "Release the machine when a start phase fails"),
                    ConfigKey("failure_policy", "publish", "string",
                              "Post-start failure policy: publish, on_fire or restart"),
                    ConfigKey("stop_signal", "SIGTERM", "string", "Signal for graceful stop"),
                    ConfigKey("stop_escalation", False, "boolean",
                              "Allow SIGKILL after the stop grace period"),
                    ConfigKey("stop_grace_seconds", 30, "integer",
                              "Seconds before stop escalates"),
                    ConfigKey("install_script_timeout", None, "number",
                              "Seconds before the install script is aborted"),
                ),
            ),
            abstract=True,
        )
        catalog.register(
            EntityTypeSpec(
                type_tag="noop-service",
                parent="software-process",
                description="Service whose phases all succeed without side effects",
            ),
            driver_factory=NoopDriver,
        )
        catalog.register(
            EntityTypeSpec(
                type_tag="vanilla-process",
                parent="software-process",
                description="Process described entirely by shell commands in config",
                config_keys=(
                    ConfigKey("download_url", None, "any", "Archive URL(s) to fetch"),
                    ConfigKey("install_command", None, "string", "Run after unpacking"),
                    ConfigKey("customize_command", None, "string", "Run in the run dir"),
                    ConfigKey("launch_command", None, "string", "Process command line"),
                ),
            ),
            driver_factory=VanillaProcessDriver,
        )
        return catalog
