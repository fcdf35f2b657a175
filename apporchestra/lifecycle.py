"""
Entity lifecycle engine - the supervised state machine behind start/stop/restart.

STARTING sequence for a driven entity:
1. Publish service.state = STARTING
2. Obtain a machine from the location's provider and describe its OS and
   architecture (transient errors retried)
3. install (transient errors retried), customize, launch
4. Poll is_running with exponential backoff inside the readiness budget
5. Publish service.isUp = true and move to RUNNING
6. Start children in declared order

Driverless entities (applications, groups) bind the location record and
go straight to RUNNING. A phase failure moves the entity to ON_FIRE with
the detail in ``service.problem``. Cancellation mid-start rolls completed
steps back in reverse (stop if launched, release the machine) and ends in
STOPPED.

STOPPING stops children first (in reverse order), then the process, polls
until it is down, and always releases the machine.

State checks and transitions happen under Entity.lock; the long-running
phases run outside it.
"""

import logging
from typing import Any, Callable, Optional

from apporchestra.config import ApporchestraConfig
from apporchestra.drivers import DriverContext
from apporchestra.entity import Entity, EntityTree
from apporchestra.errors import (
    BadArgument,
    Cancelled,
    CompoundError,
    InternalInvariant,
    PhaseTimeout,
    PreconditionFailed,
    TransientError,
    error_to_dict,
)
from apporchestra.locations import LocationStore
from apporchestra.machines import ProviderRegistry
from apporchestra.remote import RemoteExecutor
from apporchestra.schemas import Lifecycle, Location
from apporchestra.sensors import (
    CHILDREN_STATE,
    SERVICE_PROBLEM,
    SERVICE_STATE,
    SERVICE_UP,
    EntitySensors,
    SensorBus,
)
from apporchestra.tasks import CancellationToken, TaskRegistry
from apporchestra.templates import TemplateRenderer
from apporchestra.utils import Clock, retry_with_backoff, sanitize_error_message

logger = logging.getLogger(__name__)


class LifecycleManager:
    """
    Drives entities through start, stop, restart and recovery.

    Args:
        tree: Entity tree
        sensors: Sensor bus for state, readiness and problem sensors
        tasks: Task arena (children run as nested tasks)
        providers: Machine provider registry
        locations: Location store
        remote: Remote executor handed to drivers
        renderer: Template renderer handed to drivers
        config: Orchestrator configuration (phase budgets, base dir)
        clock: Clock for polling and backoff
        on_change: Called with an entity after each state change
    """

    def __init__(
        self,
        tree: EntityTree,
        sensors: SensorBus,
        tasks: TaskRegistry,
        providers: ProviderRegistry,
        locations: LocationStore,
        remote: RemoteExecutor,
        renderer: TemplateRenderer,
        config: Optional[ApporchestraConfig] = None,
        clock: Optional[Clock] = None,
        on_change: Optional[Callable[[Entity], None]] = None,
    ):
        self.tree = tree
        self.sensors = sensors
        self.tasks = tasks
        self.providers = providers
        self.locations = locations
        self.remote = remote
        self.renderer = renderer
        self.config = config or ApporchestraConfig()
        self.clock = clock or Clock()
        self._on_change = on_change

    # ------------------------------------------------------------------
    # Effector bodies
    # ------------------------------------------------------------------

    def register(self, runtime: Any) -> None:
        """Register start/stop/restart as effector bodies on a runtime."""
        runtime.register_body("start", lambda e, args, token: self.start(e, token, args.get("locations")))
        runtime.register_body("stop", lambda e, args, token: self.stop(e, token))
        runtime.register_body("restart", lambda e, args, token: self.restart(e, token))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def context_for(self, entity: Entity, token: CancellationToken) -> DriverContext:
        """Build the driver context for a phase."""
        return DriverContext(
            entity_id=entity.entity_id,
            application_id=entity.application_id,
            type_tag=entity.type_tag,
            config=entity.config,
            machine=entity.machine,
            sensors=EntitySensors(self.sensors, entity.entity_id),
            token=token,
            executor=self.remote,
            renderer=self.renderer,
            base_dir=self.config.base_dir,
        )

    def _set_state(self, entity: Entity, state: Lifecycle) -> None:
        # Caller holds entity.lock
        old = entity.transition(state)
        self.sensors.set(entity.entity_id, SERVICE_STATE, state.value)
        logger.info(
            f"{entity.entity_id}: {old.value} -> {state.value}",
            extra={"entity": entity.entity_id, "event": "lifecycle.transition",
                   "metadata": {"from": old.value, "to": state.value}},
        )

    def _changed(self, entity: Entity) -> None:
        if self._on_change is not None:
            self._on_change(entity)

    def _resolve_locations(
        self,
        entity: Entity,
        requested: Optional[list[str]],
        inherited: tuple[str, ...],
    ) -> list[Location]:
        ids: tuple[str, ...] = tuple(requested or ()) or entity.locations or inherited
        if not ids:
            parent = self.tree.parent(entity)
            while parent is not None and not ids:
                ids = parent.started_locations or parent.locations
                parent = self.tree.parent(parent)
        if not ids:
            ids = entity.started_locations
        if not ids:
            raise BadArgument(f"No location given for {entity.entity_id}")
        return [self.locations.get(location_id) for location_id in ids]

    def _run_phase(
        self,
        entity: Entity,
        phase: str,
        action: Callable[[DriverContext], Any],
        token: CancellationToken,
        retry_transient: bool = False,
        budget: Optional[float] = None,
    ) -> Any:
        """Run one driver phase under its budget, retrying transient errors if asked."""
        if budget is None:
            budget = self.config.lifecycle.phase_timeout(phase)
        phase_token = token.child(timeout=budget)
        logger.info(
            f"{entity.entity_id}: {phase}",
            extra={"entity": entity.entity_id, "event": f"phase.{phase}"},
        )
        try:
            ctx = self.context_for(entity, phase_token)
            if not retry_transient:
                return action(ctx)
            lc = self.config.lifecycle
            return retry_with_backoff(
                lambda: action(ctx),
                deadline=self.clock.now() + budget if budget else None,
                initial_delay=lc.transient_retry_initial_delay,
                max_delay=lc.transient_retry_max_delay,
                token=phase_token,
                clock=self.clock,
                logger=logger,
            )
        except Cancelled:
            if phase_token.timed_out and not token.is_cancelled:
                raise PhaseTimeout(phase, budget)
            raise
        finally:
            phase_token.close()

    def release_machine(self, entity: Entity) -> None:
        """Release the entity's machine, if it holds one."""
        with entity.lock:
            handle = entity.machine
            entity.machine = None
        if handle is None:
            return
        location = self.locations.get(handle.location_id)
        self.providers.for_location(location).release(handle)

    def _fail(self, entity: Entity, phase: str, error: BaseException) -> None:
        """Move an entity to ON_FIRE, recording the problem."""
        problem = error_to_dict(error, phase)
        with entity.lock:
            if entity.state != Lifecycle.ON_FIRE:
                self._set_state(entity, Lifecycle.ON_FIRE)
            self.sensors.set(entity.entity_id, SERVICE_UP, False)
            self.sensors.set(entity.entity_id, SERVICE_PROBLEM, problem)
        logger.error(
            f"{entity.entity_id}: {phase} failed: {sanitize_error_message(error)}",
            extra={"entity": entity.entity_id, "event": "lifecycle.on_fire", "metadata": problem},
        )
        self._changed(entity)

    def _publish_children(self, entity: Entity) -> dict[str, Any]:
        children = self.tree.children(entity)
        counts = {state: 0 for state in Lifecycle}
        for child in children:
            counts[child.state] += 1
        summary = {
            "total": len(children),
            "running": counts[Lifecycle.RUNNING],
            "stopped": counts[Lifecycle.STOPPED] + counts[Lifecycle.UNINITIALIZED],
            "onFire": counts[Lifecycle.ON_FIRE],
            "failed": [c.entity_id for c in children if c.state == Lifecycle.ON_FIRE],
        }
        if children:
            self.sensors.set(entity.entity_id, CHILDREN_STATE, summary)
        return summary

    def _wait_while(self, entity: Entity, state: Lifecycle, token: CancellationToken) -> None:
        """Block until another task moves the entity out of ``state``."""
        self.sensors.wait_for_sensor(
            entity.entity_id,
            SERVICE_STATE,
            lambda value: value != state.value,
            token=token,
        )

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(
        self,
        entity: Entity,
        token: CancellationToken,
        locations: Optional[list[str]] = None,
        inherited: tuple[str, ...] = (),
    ) -> dict[str, Any]:
        """
        Start an entity and then its children.

        Returns immediately if the entity is already RUNNING.

        Raises:
            PreconditionFailed: If the parent is not RUNNING or the state forbids start
            ProviderError, ScriptFailed, PhaseTimeout: Phase failures (entity ON_FIRE)
            Cancelled: If cancelled (entity compensated to STOPPED)
            CompoundError: If any child failed to start
        """
        resolved = self._resolve_locations(entity, locations, inherited)
        while True:
            with entity.lock:
                state = entity.state
                if state == Lifecycle.RUNNING:
                    logger.info(f"{entity.entity_id} already RUNNING")
                    return {"entity": entity.entity_id, "state": state.value, "changed": False}
                if state in (Lifecycle.UNINITIALIZED, Lifecycle.STOPPED):
                    parent = self.tree.parent(entity)
                    if parent is not None and parent.state != Lifecycle.RUNNING:
                        raise PreconditionFailed(
                            f"Cannot start {entity.entity_id}: parent {parent.entity_id} "
                            f"is {parent.state.value}"
                        )
                    self._set_state(entity, Lifecycle.STARTING)
                    self.sensors.set(entity.entity_id, SERVICE_UP, False)
                    break
                if state != Lifecycle.STARTING:
                    raise PreconditionFailed(
                        f"Cannot start {entity.entity_id} in state {state.value}"
                    )
            # Another task is starting it; wait for that to settle and re-check
            self._wait_while(entity, Lifecycle.STARTING, token)
        self._changed(entity)

        location_ids = tuple(loc.location_id for loc in resolved)
        if entity.driverless:
            self._start_driverless(entity, resolved[0], token)
        else:
            self._start_driven(entity, resolved[0], token)

        with entity.lock:
            entity.started_locations = location_ids
        self._changed(entity)

        self._start_children(entity, token, location_ids)
        return {
            "entity": entity.entity_id,
            "state": Lifecycle.RUNNING.value,
            "location": resolved[0].location_id,
            "changed": True,
        }

    def _start_driverless(self, entity: Entity, location: Location, token: CancellationToken) -> None:
        try:
            token.raise_if_cancelled()
        except Cancelled:
            with entity.lock:
                self._set_state(entity, Lifecycle.STOPPED)
            self._changed(entity)
            raise
        with entity.lock:
            entity.location = location
            self._set_state(entity, Lifecycle.RUNNING)
            self.sensors.set(entity.entity_id, SERVICE_UP, True)

    def _start_driven(self, entity: Entity, location: Location, token: CancellationToken) -> None:
        launched = False
        phase = "obtain"
        try:
            provider = self.providers.for_location(location)
            handle = self._run_phase(
                entity,
                phase,
                lambda ctx: provider.obtain(location, token=ctx.token),
                token,
                retry_transient=True,
            )
            with entity.lock:
                entity.machine = handle
                entity.location = location
            if handle.details is None:
                phase = "describe"
                handle.details = self._run_phase(
                    entity,
                    phase,
                    lambda ctx: provider.describe(handle),
                    token,
                    retry_transient=True,
                )
            self._changed(entity)

            driver = entity.driver
            phase = "install"
            self._run_phase(entity, phase, driver.install, token, retry_transient=True)
            phase = "customize"
            self._run_phase(entity, phase, driver.customize, token)
            phase = "launch"
            launched = True
            self._run_phase(entity, phase, driver.launch, token)
            phase = "readiness"
            self._await_readiness(entity, token)
        except Cancelled:
            self._compensate(entity, launched)
            raise
        except Exception as e:
            self._fail(entity, phase, e)
            if entity.get_config("release_on_error", False):
                self.release_machine(entity)
                with entity.lock:
                    entity.location = None
            raise

        with entity.lock:
            if entity.location is None or entity.machine is None:
                raise InternalInvariant(f"{entity.entity_id} reached RUNNING without a location")
            self._set_state(entity, Lifecycle.RUNNING)
            self.sensors.set(entity.entity_id, SERVICE_UP, True)

    def _await_readiness(self, entity: Entity, token: CancellationToken) -> None:
        """
        Poll is_running with exponential backoff until up or out of budget.

        Raises:
            PhaseTimeout: If the readiness budget is exhausted
        """
        lc = self.config.lifecycle
        budget = lc.readiness_timeout
        deadline = self.clock.now() + budget
        delay = lc.readiness_initial_delay
        ctx = self.context_for(entity, token)
        while True:
            token.raise_if_cancelled()
            try:
                if entity.driver.is_running(ctx):
                    return
            except TransientError as e:
                logger.warning(f"{entity.entity_id}: readiness probe failed: {e}")
            remaining = deadline - self.clock.now()
            if remaining <= 0:
                raise PhaseTimeout("readiness", budget)
            self.clock.sleep(min(delay, remaining), token)
            delay = min(delay * 2, lc.readiness_max_delay)

    def _compensate(self, entity: Entity, launched: bool) -> None:
        """Roll back a cancelled start: stop if launched, release the machine."""
        logger.warning(
            f"{entity.entity_id}: start cancelled, compensating",
            extra={"entity": entity.entity_id, "event": "lifecycle.compensate"},
        )
        try:
            if launched and entity.machine is not None:
                # The task token is already cancelled; compensation gets a fresh one
                fresh = CancellationToken()
                self._run_phase(
                    entity, "stop", entity.driver.stop, fresh,
                    budget=self.config.lifecycle.stop_timeout,
                )
            self.release_machine(entity)
        except Exception as e:
            self._fail(entity, "compensation", e)
            return
        with entity.lock:
            entity.location = None
            self._set_state(entity, Lifecycle.STOPPED)
            self.sensors.set(entity.entity_id, SERVICE_UP, False)
        self._changed(entity)

    def _start_children(
        self,
        entity: Entity,
        token: CancellationToken,
        location_ids: tuple[str, ...],
        children: Optional[list[Entity]] = None,
    ) -> None:
        if children is None:
            children = self.tree.children(entity)
        if not children:
            return
        failures: list[Exception] = []
        try:
            for child in children:
                token.raise_if_cancelled()
                try:
                    self.tasks.run_inline(
                        child.entity_id,
                        "start",
                        lambda child_token, c=child: self.start(c, child_token, inherited=location_ids),
                        application_id=child.application_id,
                    )
                except Cancelled:
                    raise
                except Exception as e:
                    failures.append(e)
        finally:
            self._publish_children(entity)
        if failures:
            raise CompoundError(
                f"Children of {entity.entity_id} failed to start", failures
            )

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop(self, entity: Entity, token: CancellationToken) -> dict[str, Any]:
        """
        Stop an entity's children (reverse order) and then the entity.

        The machine is released even when stopping fails. Returns
        immediately if the entity is already STOPPED or never started.

        Raises:
            PreconditionFailed: If the entity is STARTING (cancel the start first)
            ScriptFailed: If the driver's stop failed (entity ON_FIRE)
            CompoundError: If the entity or several children failed to stop
        """
        while True:
            with entity.lock:
                state = entity.state
                if state in (Lifecycle.STOPPED, Lifecycle.UNINITIALIZED):
                    return {"entity": entity.entity_id, "state": state.value, "changed": False}
                if state == Lifecycle.STARTING:
                    raise PreconditionFailed(
                        f"{entity.entity_id} is STARTING; cancel the start task first"
                    )
                if state != Lifecycle.STOPPING:
                    break
            self._wait_while(entity, Lifecycle.STOPPING, token)

        errors = self._stop_children(entity, self._live_children(entity))

        with entity.lock:
            self._set_state(entity, Lifecycle.STOPPING)
            self.sensors.set(entity.entity_id, SERVICE_UP, False)
        self._changed(entity)

        stop_error: Optional[Exception] = None
        try:
            if not entity.driverless and entity.machine is not None:
                self._stop_process(entity, token)
        except Exception as e:
            stop_error = e
        finally:
            self.release_machine(entity)
            with entity.lock:
                entity.location = None

        if stop_error is not None:
            self._fail(entity, "stop", stop_error)
            errors.insert(0, stop_error)
        else:
            with entity.lock:
                self._set_state(entity, Lifecycle.STOPPED)
            self._changed(entity)

        if len(errors) == 1 and errors[0] is stop_error:
            raise stop_error
        if errors:
            raise CompoundError(f"Stopping {entity.entity_id} failed", errors)
        return {"entity": entity.entity_id, "state": Lifecycle.STOPPED.value, "changed": True}

    def _live_children(self, entity: Entity) -> list[Entity]:
        return [
            child for child in self.tree.children(entity)
            if child.state not in (Lifecycle.STOPPED, Lifecycle.UNINITIALIZED)
        ]

    def _stop_children(self, entity: Entity, children: list[Entity]) -> list[Exception]:
        """Stop ``children`` in reverse order, collecting failures."""
        errors: list[Exception] = []
        for child in reversed(children):
            try:
                self.tasks.run_inline(
                    child.entity_id,
                    "stop",
                    lambda child_token, c=child: self.stop(c, child_token),
                    application_id=child.application_id,
                )
            except Exception as e:
                errors.append(e)
        self._publish_children(entity)
        return errors

    def _stop_process(self, entity: Entity, token: CancellationToken) -> None:
        """Ask the driver to stop and poll until the process is gone or the budget ends."""
        lc = self.config.lifecycle
        self._run_phase(entity, "stop", entity.driver.stop, token)

        budget = lc.stop_timeout
        deadline = self.clock.now() + budget
        delay = lc.readiness_initial_delay
        ctx = self.context_for(entity, token)
        while entity.driver.is_running(ctx):
            remaining = deadline - self.clock.now()
            if remaining <= 0:
                problem = error_to_dict(PhaseTimeout("stop", budget), "stop")
                problem["forcedRelease"] = True
                self.sensors.set(entity.entity_id, SERVICE_PROBLEM, problem)
                logger.warning(
                    f"{entity.entity_id} still running after {budget:g}s; forcing release",
                    extra={"entity": entity.entity_id, "event": "lifecycle.forced_release"},
                )
                return
            self.clock.sleep(min(delay, remaining), token)
            delay = min(delay * 2, lc.readiness_max_delay)

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    def restart(self, entity: Entity, token: CancellationToken) -> dict[str, Any]:
        """
        Restart an entity.

        A RUNNING driven entity is restarted in place through the driver,
        keeping its machine. Its live children are stopped first (reverse
        order) and started again once it is back to RUNNING. Driverless,
        STOPPED and ON_FIRE entities go through a full stop and start.

        Raises:
            CompoundError: If live children could not be stopped (entity untouched)
        """
        with entity.lock:
            state = entity.state
            in_place = state == Lifecycle.RUNNING and not entity.driverless
        if not in_place:
            if state != Lifecycle.STOPPED:
                self.stop(entity, token)
            return self.start(entity, token)

        live = self._live_children(entity)
        if live:
            errors = self._stop_children(entity, live)
            if errors:
                raise CompoundError(f"Stopping children of {entity.entity_id} failed", errors)

        with entity.lock:
            if entity.state != Lifecycle.RUNNING:
                raise PreconditionFailed(
                    f"Cannot restart {entity.entity_id} in state {entity.state.value}"
                )
            self._set_state(entity, Lifecycle.STOPPING)
            self.sensors.set(entity.entity_id, SERVICE_UP, False)
        self._changed(entity)
        phase = "restart"
        try:
            self._run_phase(entity, phase, entity.driver.restart, token)
            with entity.lock:
                self._set_state(entity, Lifecycle.STOPPED)
                self._set_state(entity, Lifecycle.STARTING)
            phase = "readiness"
            self._await_readiness(entity, token)
        except Cancelled:
            self._compensate(entity, launched=True)
            raise
        except Exception as e:
            self._fail(entity, phase, e)
            raise
        with entity.lock:
            self._set_state(entity, Lifecycle.RUNNING)
            self.sensors.set(entity.entity_id, SERVICE_UP, True)
        self._changed(entity)
        if live:
            self._start_children(entity, token, entity.started_locations, live)
        return {"entity": entity.entity_id, "state": Lifecycle.RUNNING.value, "changed": True}

    # ------------------------------------------------------------------
    # Supervision and recovery
    # ------------------------------------------------------------------

    def probe(self, entity: Entity) -> bool:
        """Run the driver's liveness probe once; driverless entities are always up."""
        if entity.driverless:
            return True
        if entity.machine is None:
            return False
        return bool(entity.driver.is_running(self.context_for(entity, CancellationToken())))

    def mark_on_fire(self, entity: Entity, reason: str) -> None:
        """Move a RUNNING entity to ON_FIRE after a supervision failure."""
        self._fail(entity, "monitor", PreconditionFailed(reason))

    def recover(self, entity: Entity) -> Lifecycle:
        """
        Reconcile a RECOVERING entity with reality after rehydration.

        Returns:
            The resulting state (RUNNING or ON_FIRE)
        """
        parent = self.tree.parent(entity)
        if parent is not None and parent.state != Lifecycle.RUNNING:
            self._fail(entity, "recover", PreconditionFailed(
                f"parent {parent.entity_id} is {parent.state.value}"
            ))
            return entity.state
        try:
            up = self.probe(entity)
        except Exception as e:
            self._fail(entity, "recover", e)
            return entity.state
        if not up:
            self._fail(entity, "recover", PreconditionFailed("process not running after restart"))
            return entity.state
        with entity.lock:
            self._set_state(entity, Lifecycle.RUNNING)
            self.sensors.set(entity.entity_id, SERVICE_UP, True)
        self._changed(entity)
        return entity.state
