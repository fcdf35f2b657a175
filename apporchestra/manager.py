"""
Application manager - owns the entity tree and every application's lifecycle.

The manager is the programmatic surface of the orchestrator:

    manager = ApplicationManager(config, locations=LocationStore.load(path))
    app_id = manager.create_application(plan)
    task_id = manager.start_application(app_id, ["loc-local"])
    manager.wait_for_task(task_id)
    manager.get_sensor(app_id, "service.state")

Each application owns a bounded worker pool; its lifecycle tasks and
effectors run there. Sensor delivery uses the bus's separate shared pool.
With a StateStore configured, entity snapshots, durable sensors and task
history are persisted after every change, and rehydrate() rebuilds the
trees after a restart.
"""

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Optional

from apporchestra.catalog import EntityTypeRegistry
from apporchestra.config import ApporchestraConfig
from apporchestra.effectors import EffectorRuntime
from apporchestra.entity import Entity, EntityTree
from apporchestra.errors import (
    ApporchestraError,
    BadArgument,
    InternalInvariant,
    NotFound,
    PreconditionFailed,
)
from apporchestra.lifecycle import LifecycleManager
from apporchestra.locations import DEFAULT_LOCATION, LocationStore
from apporchestra.machines import ProviderRegistry
from apporchestra.monitor import ServiceMonitor
from apporchestra.persistence import StateStore
from apporchestra.remote import RemoteExecutor, ShellExecutor
from apporchestra.schemas import (
    EntityPlan,
    Lifecycle,
    TaskRecord,
    TaskState,
    application_plan,
)
from apporchestra.sensors import SERVICE_STATE, SERVICE_UP, SensorBus, SensorHandler, SensorValue
from apporchestra.tasks import TaskRegistry
from apporchestra.templates import TemplateRenderer
from apporchestra.utils import Clock, generate_ulid, utcnow

logger = logging.getLogger(__name__)

SETTLED_STATES = (Lifecycle.UNINITIALIZED, Lifecycle.STOPPED, Lifecycle.ON_FIRE)


class ApplicationManager:
    """
    Creates, starts, stops and deletes applications.

    Args:
        config: Orchestrator configuration
        catalog: Entity type registry (defaults to the built-in types)
        locations: Location store (defaults to the localhost location)
        providers: Machine provider registry
        remote: Remote executor used by drivers
        renderer: Template renderer used by drivers
        store: Optional state store for persistence and rehydration
        clock: Clock used for polling and backoff
        sensor_executor: Optional executor for sensor delivery
    """

    def __init__(
        self,
        config: Optional[ApporchestraConfig] = None,
        catalog: Optional[EntityTypeRegistry] = None,
        locations: Optional[LocationStore] = None,
        providers: Optional[ProviderRegistry] = None,
        remote: Optional[RemoteExecutor] = None,
        renderer: Optional[TemplateRenderer] = None,
        store: Optional[StateStore] = None,
        clock: Optional[Clock] = None,
        sensor_executor: Optional[Executor] = None,
    ):
        self.config = config or ApporchestraConfig()
        self.catalog = catalog or EntityTypeRegistry.create_default()
        self.locations = locations or LocationStore([DEFAULT_LOCATION])
        self.providers = providers or ProviderRegistry.create_default()
        self.store = store

        self.tree = EntityTree()
        self.tasks = TaskRegistry()
        self.sensors = SensorBus(
            delivery_workers=self.config.sensors.delivery_workers,
            buffer_size=self.config.sensors.buffer_size,
            executor=sensor_executor,
        )
        self.lifecycle = LifecycleManager(
            tree=self.tree,
            sensors=self.sensors,
            tasks=self.tasks,
            providers=self.providers,
            locations=self.locations,
            remote=remote or ShellExecutor(),
            renderer=renderer or TemplateRenderer(),
            config=self.config,
            clock=clock,
            on_change=self._persist_entity,
        )
        self.runtime = EffectorRuntime(
            tasks=self.tasks,
            sensors=self.sensors,
            executor_for=self._executor_for,
            context_for=self.lifecycle.context_for,
            is_quarantined=self.is_quarantined,
            on_invariant_violation=self._quarantine,
        )
        self.lifecycle.register(self.runtime)
        self.monitor = ServiceMonitor(
            self.tree,
            self.lifecycle,
            restart=lambda entity: self.runtime.invoke(entity, "restart"),
            interval=self.config.monitor_interval,
        )

        self._lock = threading.Lock()
        self._pools: dict[str, ThreadPoolExecutor] = {}
        self._quarantined: dict[str, str] = {}

        if self.store is not None:
            self.tasks.add_listener(self._persist_task)

    # ------------------------------------------------------------------
    # Worker pools and quarantine
    # ------------------------------------------------------------------

    def _create_pool(self, app_id: str) -> None:
        with self._lock:
            self._pools[app_id] = ThreadPoolExecutor(
                max_workers=self.config.executor.max_pool_size,
                thread_name_prefix=f"app-{app_id[-8:]}",
            )

    def _executor_for(self, app_id: str) -> Executor:
        with self._lock:
            pool = self._pools.get(app_id)
        if pool is None:
            raise NotFound(f"No worker pool for application {app_id}")
        return pool

    def is_quarantined(self, app_id: str) -> bool:
        with self._lock:
            return app_id in self._quarantined

    def _quarantine(self, app_id: str, error: InternalInvariant) -> None:
        with self._lock:
            self._quarantined[app_id] = str(error)
        logger.critical(
            f"BUG: application {app_id} quarantined: {error}",
            extra={"entity": app_id, "event": "application.quarantined"},
        )

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def create_application(self, plan: EntityPlan | dict[str, Any]) -> str:
        """
        Build an application's entity tree from a plan.

        Returns:
            Application id (the root entity's id)

        Raises:
            BadArgument: Malformed plan, abstract or non-application root, bad config
            NotFound: Unknown type tag or location id
        """
        if isinstance(plan, dict):
            plan = application_plan(plan)

        root_entry = self.catalog.resolve(plan.type_tag)
        if not root_entry.resolved.is_a("application"):
            raise BadArgument(f"Root of a plan must be an application, got '{plan.type_tag}'")

        app_id = plan.entity_id or generate_ulid()
        entities: list[Entity] = []

        def build(node: EntityPlan, parent_id: Optional[str]) -> None:
            for location_id in node.locations:
                self.locations.get(location_id)
            entity_id = app_id if parent_id is None else (node.entity_id or generate_ulid())
            entity = Entity(
                entity_id=entity_id,
                name=node.name,
                entry=self.catalog.resolve(node.type_tag),
                application_id=app_id,
                config=node.config,
                parent_id=parent_id,
                locations=node.locations,
            )
            entities.append(entity)
            for child in node.children:
                build(child, entity_id)

        build(plan, None)

        ids = [e.entity_id for e in entities]
        if len(set(ids)) != len(ids):
            raise BadArgument(f"Plan contains duplicate entity ids: {ids}")

        self.tree.add_all(entities)

        for entity in entities:
            self.sensors.declare(entity.entity_id, entity.type.sensors)
            self.sensors.set(entity.entity_id, SERVICE_STATE, entity.state.value)
            self.sensors.set(entity.entity_id, SERVICE_UP, False)

        self._create_pool(app_id)
        self._persist_application(app_id)
        logger.info(
            f"Created application {app_id} ({plan.name}) with {len(entities)} entities",
            extra={"entity": app_id, "event": "application.created"},
        )
        return app_id

    def start_application(self, app_id: str, location_ids: Optional[list[str]] = None) -> str:
        """
        Start an application in the given locations.

        Returns:
            Task id of the start

        Raises:
            NotFound: Unknown application or location
            BadArgument: No location given and none declared by the plan
            PreconditionFailed: Application quarantined or in a non-startable state
        """
        app = self.tree.get_application(app_id)
        for location_id in location_ids or []:
            self.locations.get(location_id)
        if not location_ids and not app.locations and not app.started_locations:
            raise BadArgument(f"No location given for application {app_id}")
        args = {"locations": list(location_ids)} if location_ids else {}
        return self.runtime.invoke(app, "start", args).task_id

    def stop_application(self, app_id: str) -> str:
        """
        Stop an application, cancelling any in-flight start first.

        Returns:
            Task id of the stop
        """
        app = self.tree.get_application(app_id)
        in_flight = [
            record for record in self.tasks.active(app_id)
            if record.parent_id is None and record.name in ("start", "restart")
        ]
        for record in in_flight:
            self.tasks.cancel(record.task_id, "Application stop requested")
        for record in in_flight:
            done = self.tasks.wait(record.task_id, timeout=self.config.force_delete_timeout)
            if not done.state.is_done:
                raise PreconditionFailed(
                    f"Start task {record.task_id} did not yield to cancellation"
                )
        return self.runtime.invoke(app, "stop").task_id

    def delete_application(self, app_id: str, force: bool = False) -> None:
        """
        Delete a stopped application and everything it owns.

        Machines still held (for example by ON_FIRE entities) are released.

        Args:
            app_id: Application to delete
            force: Stop the application first and wait (bounded) for it

        Raises:
            PreconditionFailed: If entities are live or tasks are running
                (without force), or a forced stop does not finish in time
        """
        self.tree.get_application(app_id)
        entities = self.tree.walk(app_id)
        live = [e.entity_id for e in entities if e.state not in SETTLED_STATES]

        if live or self.tasks.active(app_id):
            if not force:
                raise PreconditionFailed(
                    f"Application {app_id} has live entities {live} or active tasks; stop it first"
                )
            if live:
                task_id = self.stop_application(app_id)
                record = self.tasks.wait(task_id, timeout=self.config.force_delete_timeout)
                if not record.state.is_done:
                    raise PreconditionFailed(
                        f"Application {app_id} did not stop within "
                        f"{self.config.force_delete_timeout:g}s"
                    )
            for record in self.tasks.active(app_id):
                self.tasks.cancel(record.task_id, "Application deleted")
                self.tasks.wait(record.task_id, timeout=self.config.force_delete_timeout)

        for entity in self.tree.walk(app_id):
            self.lifecycle.release_machine(entity)

        removed = self.tree.remove_application(app_id)
        for entity in removed:
            self.sensors.remove_entity(entity.entity_id)
        self.tasks.discard_application(app_id)

        with self._lock:
            pool = self._pools.pop(app_id, None)
            self._quarantined.pop(app_id, None)
        if pool is not None:
            pool.shutdown(wait=False)
        if self.store is not None:
            self.store.delete_application(app_id)
        logger.info(f"Deleted application {app_id}", extra={"entity": app_id, "event": "application.deleted"})

    def list_applications(self) -> list[dict[str, Any]]:
        """Summaries of every application."""
        summaries = []
        for app in self.tree.applications():
            entities = self.tree.walk(app.entity_id)
            summaries.append({
                "id": app.entity_id,
                "name": app.name,
                "type": app.type_tag,
                "state": app.state.value,
                "entities": len(entities),
                "locations": list(app.started_locations or app.locations),
                "quarantined": self.is_quarantined(app.entity_id),
            })
        return summaries

    def get_entity_tree(self, app_id: str) -> dict[str, Any]:
        """Nested view of an application's entities."""
        self.tree.get_application(app_id)
        return self.tree.tree(app_id)

    def get_entity(self, entity_id: str) -> Entity:
        return self.tree.get(entity_id)

    # ------------------------------------------------------------------
    # Sensors
    # ------------------------------------------------------------------

    def get_sensor(self, entity_id: str, key: str) -> Any:
        """Latest value of a sensor, or None if never published."""
        self.tree.get(entity_id)
        return self.sensors.get_value(entity_id, key)

    def get_sensors(self, entity_id: str) -> dict[str, SensorValue]:
        self.tree.get(entity_id)
        return self.sensors.snapshot(entity_id)

    def subscribe(
        self,
        entity_id: str,
        key: Optional[str],
        handler: SensorHandler,
        buffer_size: Optional[int] = None,
    ) -> str:
        """Subscribe to one sensor (or all when ``key`` is None); returns a subscription id."""
        self.tree.get(entity_id)
        return self.sensors.subscribe(entity_id, key, handler, buffer_size)

    def unsubscribe(self, sub_id: str) -> None:
        self.sensors.unsubscribe(sub_id)

    def wait_for_sensor(
        self,
        entity_id: str,
        key: str,
        predicate: Callable[[Any], bool],
        timeout: Optional[float] = None,
    ) -> Any:
        self.tree.get(entity_id)
        return self.sensors.wait_for_sensor(entity_id, key, predicate, timeout)

    # ------------------------------------------------------------------
    # Effectors and tasks
    # ------------------------------------------------------------------

    def list_effectors(self, entity_id: str) -> list[dict[str, Any]]:
        entity = self.tree.get(entity_id)
        return [d.to_dict() for d in self.runtime.list_effectors(entity)]

    def invoke(self, entity_id: str, name: str, args: Optional[dict[str, Any]] = None) -> str:
        """Invoke an effector; returns the task id."""
        entity = self.tree.get(entity_id)
        return self.runtime.invoke(entity, name, args).task_id

    def get_task(self, task_id: str) -> TaskRecord:
        return self.tasks.get(task_id)

    def list_tasks(self, app_id: Optional[str] = None) -> list[TaskRecord]:
        return self.tasks.list_tasks(application_id=app_id)

    def cancel_task(self, task_id: str) -> None:
        self.tasks.cancel(task_id)

    def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> TaskRecord:
        return self.tasks.wait(task_id, timeout)

    def discard_task(self, task_id: str) -> None:
        self.tasks.discard(task_id)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_application(self, app_id: str) -> None:
        if self.store is None:
            return
        try:
            entities = self.tree.walk(app_id)
        except NotFound:
            return
        try:
            self.store.save_entities(app_id, [e.to_dict() for e in entities])
            self.store.save_sensors(app_id, {
                e.entity_id: self.sensors.persistent_values(e.entity_id) for e in entities
            })
        except OSError as e:
            logger.error(f"Could not persist application {app_id}: {e}")

    def _persist_entity(self, entity: Entity) -> None:
        self._persist_application(entity.application_id)

    def _persist_task(self, record: TaskRecord) -> None:
        if self.store is None or record.application_id is None:
            return
        if not self.tree.contains(record.application_id):
            return
        try:
            self.store.record_task(record.application_id, record.to_dict(), self.config.task_history_size)
        except OSError as e:
            logger.error(f"Could not persist task {record.task_id}: {e}")

    def rehydrate(self) -> list[str]:
        """
        Rebuild applications from the state store.

        UNINITIALIZED, STOPPED and ON_FIRE entities come back as they were.
        Entities that were live come back RECOVERING, re-attach their
        machine and are reconciled with the driver's liveness probe.

        Returns:
            Ids of the restored applications
        """
        if self.store is None:
            return []
        restored = []
        for app_id in self.store.list_applications():
            if self.tree.contains(app_id):
                continue
            try:
                self._rehydrate_application(app_id)
            except ApporchestraError as e:
                logger.error(f"Could not rehydrate application {app_id}: {e}")
                continue
            restored.append(app_id)
        return restored

    def _rehydrate_application(self, app_id: str) -> None:
        snapshots = self.store.load_entities(app_id) or []
        entities: list[Entity] = []
        for data in snapshots:
            fixed = set(data.get("fixed_config", []))
            config = data.get("config", {})
            entity = Entity(
                entity_id=data["id"],
                name=data.get("name", data["id"]),
                entry=self.catalog.resolve(data["type"]),
                application_id=app_id,
                config={k: v for k, v in config.items() if k in fixed},
                parent_id=data.get("parent"),
                locations=tuple(data.get("locations", [])),
            )
            for key, value in config.items():
                if key not in fixed and key in entity.type.config_keys:
                    entity.set_config(key, value)
            entity.started_locations = tuple(data.get("started_locations", []))

            state = Lifecycle(data.get("state", Lifecycle.UNINITIALIZED.value))
            entity.state = Lifecycle.RECOVERING if state.is_live else state
            if data.get("location"):
                entity.location = self.locations.get(data["location"])
            machine = data.get("machine")
            if machine and entity.location is not None:
                provider = self.providers.for_location(entity.location)
                entity.machine = provider.rehydrate(entity.location, machine)
            entities.append(entity)

        self.tree.add_all(entities)

        durable = self.store.load_sensors(app_id)
        for entity in entities:
            self.sensors.declare(entity.entity_id, entity.type.sensors)
            for key, stored in durable.get(entity.entity_id, {}).items():
                self.sensors.restore(entity.entity_id, key, stored["value"], stored["version"])
            self.sensors.set(entity.entity_id, SERVICE_STATE, entity.state.value)

        for data in self.store.load_tasks(app_id):
            record = TaskRecord.from_dict(data)
            if not record.state.is_done:
                record.state = TaskState.FAILED
                record.error = {"type": "Interrupted", "message": "Orchestrator restarted"}
                record.completed_at = utcnow()
            self.tasks.restore(record)

        self._create_pool(app_id)
        for entity in entities:
            if entity.state == Lifecycle.RECOVERING:
                self.lifecycle.recover(entity)
        self._persist_application(app_id)
        logger.info(f"Rehydrated application {app_id} ({len(entities)} entities)")

    # ------------------------------------------------------------------
    # Service lifecycle
    # ------------------------------------------------------------------

    def start_monitor(self) -> None:
        """Start post-start supervision if enabled by config."""
        if self.config.monitor_interval > 0:
            self.monitor.start()

    def shutdown(self, wait: bool = True) -> None:
        """Stop supervision, worker pools and sensor delivery."""
        self.monitor.stop()
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.shutdown(wait=wait)
        self.sensors.shutdown(wait=wait)
