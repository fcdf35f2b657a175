"""
Driver contract - the per-software recipe behind an entity.

A driver implements six phases against a DriverContext:
- install: fetch and unpack binaries (idempotent via an install marker)
- customize: render configuration, validate required ports
- launch: start the process detached; return once it has forked
- is_running: cheap liveness probe
- stop: graceful shutdown with the process's preferred signal
- restart: stop, wait for exit, then launch unless overridden

Extra effectors declared by an entity type dispatch to driver methods of
the same name with signature ``method(ctx, **args)``.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from apporchestra.errors import PhaseTimeout
from apporchestra.remote import RemoteExecutor, Script, ScriptResult
from apporchestra.sensors import EntitySensors
from apporchestra.templates import TemplateRenderer

if TYPE_CHECKING:
    from apporchestra.machines import MachineHandle
    from apporchestra.tasks import CancellationToken


@dataclass
class DriverContext:
    """
    Everything a driver phase may touch.

    Attributes:
        entity_id: Entity being driven
        application_id: Owning application
        type_tag: Entity type tag
        config: Snapshot of the entity's resolved configuration
        machine: Bound machine handle (None only for driverless checks)
        sensors: Write capability for the entity's sensors
        token: Cancellation token for the current phase
        executor: Remote executor for the machine
        renderer: Template renderer
        base_dir: Root for install and run directories on the machine
    """
    entity_id: str
    application_id: str
    type_tag: str
    config: dict[str, Any]
    machine: Optional["MachineHandle"]
    sensors: EntitySensors
    token: "CancellationToken"
    executor: RemoteExecutor
    renderer: TemplateRenderer
    base_dir: str = "/tmp/apporchestra"
    extras: dict[str, Any] = field(default_factory=dict)

    def run(self, script: Script) -> ScriptResult:
        """Execute a script on the bound machine, observing the token."""
        return self.executor.execute(self.machine, script, self.token)


class Driver(ABC):
    """
    Abstract base class for entity drivers.

    Phases raise typed errors (ScriptFailed, BadArgument, TransientError, ...)
    and return normally on success. Drivers must observe ``ctx.token`` at
    safe points in any long wait.
    """

    restart_wait_seconds = 30.0
    restart_poll_interval = 1.0

    @abstractmethod
    def install(self, ctx: DriverContext) -> None:
        """Fetch and unpack binaries; re-invocation must skip when installed."""
        pass

    @abstractmethod
    def customize(self, ctx: DriverContext) -> None:
        """Render configuration into the run directory."""
        pass

    @abstractmethod
    def launch(self, ctx: DriverContext) -> None:
        """Start the process detached, recording its pid."""
        pass

    @abstractmethod
    def is_running(self, ctx: DriverContext) -> bool:
        """Return True if the process is alive."""
        pass

    @abstractmethod
    def stop(self, ctx: DriverContext) -> None:
        """Ask the process to shut down gracefully."""
        pass

    def restart(self, ctx: DriverContext) -> None:
        """
        Stop, wait for the old process to exit, then launch; the machine stays bound.

        Raises:
            PhaseTimeout: If the process is still alive after restart_wait_seconds
        """
        self.stop(ctx)
        deadline = time.monotonic() + self.restart_wait_seconds
        while self.is_running(ctx):
            if time.monotonic() >= deadline:
                raise PhaseTimeout("restart", self.restart_wait_seconds)
            ctx.token.wait(self.restart_poll_interval)
            ctx.token.raise_if_cancelled()
        self.launch(ctx)
