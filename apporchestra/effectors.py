"""
Effector runtime - dispatches named operations on entities as tasks.

invoke() validates arguments and the entity's state against the effector
descriptor, records a Task (a child of the caller's current task, if any)
and schedules it on the owning application's worker pool.

Concurrency:
- Exclusive effectors run at most one task per (entity, name) at a time;
  later invocations wait QUEUED in FIFO order and have their allowed
  states checked again when they reach the front
- Non-exclusive effectors are submitted immediately

Effector bodies are either registered functions (start/stop/restart are
registered by the lifecycle engine) or driver methods called as
``method(ctx, **args)``.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Executor
from typing import Any, Callable, Optional

from apporchestra.entity import Entity
from apporchestra.errors import (
    Cancelled,
    InternalInvariant,
    NotFound,
    PreconditionFailed,
    error_to_dict,
)
from apporchestra.schemas import EffectorDescriptor
from apporchestra.sensors import ERROR, SensorBus
from apporchestra.tasks import CancellationToken, TaskHandle, TaskRegistry

logger = logging.getLogger(__name__)

EffectorBody = Callable[[Entity, dict[str, Any], CancellationToken], Any]


class EffectorRuntime:
    """
    Invokes effectors and tracks their tasks.

    Args:
        tasks: Task arena recording every invocation
        sensors: Sensor bus (failures are published as the ``error`` sensor)
        executor_for: Returns the worker pool of an application id
        context_for: Builds a driver context for an entity and token
        is_quarantined: Reports whether an application is quarantined
        on_invariant_violation: Called with (application_id, error) when a
            body raises InternalInvariant
    """

    def __init__(
        self,
        tasks: TaskRegistry,
        sensors: SensorBus,
        executor_for: Callable[[str], Executor],
        context_for: Optional[Callable[[Entity, CancellationToken], Any]] = None,
        is_quarantined: Optional[Callable[[str], bool]] = None,
        on_invariant_violation: Optional[Callable[[str, InternalInvariant], None]] = None,
    ):
        self.tasks = tasks
        self.sensors = sensors
        self._executor_for = executor_for
        self._context_for = context_for
        self._is_quarantined = is_quarantined or (lambda application_id: False)
        self._on_invariant_violation = on_invariant_violation
        self._bodies: dict[str, EffectorBody] = {}
        self._lock = threading.Lock()
        self._queues: dict[tuple[str, str], deque] = {}

    def register_body(self, name: str, body: EffectorBody) -> None:
        """Register the implementation of an effector name for every entity type."""
        self._bodies[name] = body

    def list_effectors(self, entity: Entity) -> list[EffectorDescriptor]:
        return list(entity.type.effectors.values())

    def describe(self, entity: Entity, name: str) -> EffectorDescriptor:
        """
        Get an effector descriptor.

        Raises:
            NotFound: If the entity's type does not declare the effector
        """
        descriptor = entity.type.effectors.get(name)
        if descriptor is None:
            raise NotFound(
                f"Entity {entity.entity_id} ({entity.type_tag}) has no effector '{name}'. "
                f"Available: {sorted(entity.type.effectors)}"
            )
        return descriptor

    def invoke(
        self,
        entity: Entity,
        name: str,
        args: Optional[dict[str, Any]] = None,
        parent_task_id: Optional[str] = None,
    ) -> TaskHandle:
        """
        Invoke an effector asynchronously.

        Args:
            entity: Target entity
            name: Effector name
            args: Arguments validated against the input schema
            parent_task_id: Parent task (defaults to the caller's current task)

        Returns:
            Handle of the created task

        Raises:
            NotFound: Unknown effector, or no implementation for it
            BadArgument: Arguments do not match the schema
            PreconditionFailed: Entity state not allowed, or application quarantined
        """
        descriptor = self.describe(entity, name)
        resolved_args = descriptor.validate_args(args)

        if self._is_quarantined(entity.application_id):
            raise PreconditionFailed(
                f"Application {entity.application_id} is quarantined after an internal error"
            )
        with entity.lock:
            state = entity.state
        key = (entity.entity_id, name)
        if not descriptor.allows(state):
            # Behind a busy exclusive queue the check is repeated when the task runs
            with self._lock:
                busy = descriptor.exclusive and bool(self._queues.get(key))
            if not busy:
                raise PreconditionFailed(
                    f"Effector '{name}' not allowed on {entity.entity_id} in state {state.value}"
                )
        self._resolve_body(entity, descriptor)

        record = self.tasks.create(
            entity.entity_id,
            name,
            application_id=entity.application_id,
            parent_id=parent_task_id or self.tasks.current_task_id(),
            args=resolved_args,
        )
        logger.info(
            f"Invoking {name} on {entity.entity_id} as task {record.task_id}",
            extra={"entity": entity.entity_id, "event": "effector.invoked",
                   "metadata": {"task": record.task_id, "effector": name}},
        )

        if descriptor.exclusive:
            with self._lock:
                queue = self._queues.setdefault(key, deque())
                queue.append((entity, descriptor, record.task_id, resolved_args))
                submit_now = len(queue) == 1
            if submit_now:
                self._submit(entity, descriptor, record.task_id, resolved_args)
        else:
            self._submit(entity, descriptor, record.task_id, resolved_args)

        return TaskHandle(self.tasks, record.task_id)

    def _resolve_body(self, entity: Entity, descriptor: EffectorDescriptor) -> Callable[..., Any]:
        method = descriptor.method or descriptor.name
        body = self._bodies.get(method)
        if body is not None:
            return body
        if entity.driver is not None and callable(getattr(entity.driver, method, None)):
            return getattr(entity.driver, method)
        raise NotFound(
            f"Effector '{descriptor.name}' has no implementation for {entity.type_tag}"
        )

    def _submit(
        self,
        entity: Entity,
        descriptor: EffectorDescriptor,
        task_id: str,
        args: dict[str, Any],
    ) -> None:
        try:
            self._executor_for(entity.application_id).submit(
                self._run, entity, descriptor, task_id, args
            )
        except RuntimeError as e:
            # Pool already shut down
            self.tasks.complete(task_id, error=e)
            if descriptor.exclusive:
                self._advance(entity.entity_id, descriptor.name)

    def _run(
        self,
        entity: Entity,
        descriptor: EffectorDescriptor,
        task_id: str,
        args: dict[str, Any],
    ) -> None:
        token = self.tasks.token(task_id)
        try:
            if token.is_cancelled:
                self.tasks.complete(task_id, error=Cancelled(token.reason or "Cancelled"))
                return
            with entity.lock:
                state = entity.state
            if not descriptor.allows(state):
                self.tasks.complete(task_id, error=PreconditionFailed(
                    f"Effector '{descriptor.name}' not allowed on {entity.entity_id} "
                    f"in state {state.value}"
                ))
                return
            self.tasks.mark_running(task_id)
            try:
                with self.tasks.bind(task_id):
                    result = self._call(entity, descriptor, args, token)
            except Exception as e:
                self._record_failure(entity, descriptor, task_id, e)
                self.tasks.complete(task_id, error=e)
            else:
                self.tasks.complete(task_id, result=result)
        finally:
            if descriptor.exclusive:
                self._advance(entity.entity_id, descriptor.name)

    def _call(
        self,
        entity: Entity,
        descriptor: EffectorDescriptor,
        args: dict[str, Any],
        token: CancellationToken,
    ) -> Any:
        method = descriptor.method or descriptor.name
        body = self._bodies.get(method)
        if body is not None:
            return body(entity, args, token)
        if self._context_for is None:
            raise NotFound(f"No driver context available for effector '{descriptor.name}'")
        ctx = self._context_for(entity, token)
        return getattr(entity.driver, method)(ctx, **args)

    def _record_failure(
        self,
        entity: Entity,
        descriptor: EffectorDescriptor,
        task_id: str,
        error: Exception,
    ) -> None:
        if isinstance(error, Cancelled):
            logger.info(f"Task {task_id} ({descriptor.name} on {entity.entity_id}) cancelled")
            return
        detail = error_to_dict(error)
        detail["effector"] = descriptor.name
        detail["task"] = task_id
        self.sensors.set(entity.entity_id, ERROR, detail)

        if isinstance(error, InternalInvariant):
            logger.critical(
                f"BUG: {error} (entity {entity.entity_id}, task {task_id})",
                extra={"entity": entity.entity_id, "event": "invariant.violated"},
            )
            if self._on_invariant_violation is not None:
                self._on_invariant_violation(entity.application_id, error)
        else:
            logger.error(
                f"Task {task_id} ({descriptor.name} on {entity.entity_id}) failed: {error}",
                extra={"entity": entity.entity_id, "event": "effector.failed",
                       "metadata": detail},
            )

    def _advance(self, entity_id: str, name: str) -> None:
        key = (entity_id, name)
        with self._lock:
            queue = self._queues.get(key)
            if not queue:
                return
            queue.popleft()
            if not queue:
                del self._queues[key]
                return
            entity, descriptor, task_id, args = queue[0]
        self._submit(entity, descriptor, task_id, args)

    def queued(self, entity_id: str, name: str) -> list[str]:
        """Task ids waiting on or holding an exclusive effector, in order."""
        with self._lock:
            return [item[2] for item in self._queues.get((entity_id, name), ())]
