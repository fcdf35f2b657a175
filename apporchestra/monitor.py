"""
Service monitor - post-start supervision of RUNNING entities.

Periodically probes every RUNNING driven entity with the driver's
is_running. When a probe reports the process gone, the entity's
``failure_policy`` config decides what happens:

- publish (default): service.isUp = false and service.problem only
- on_fire: additionally move the entity to ON_FIRE
- restart: invoke the entity's restart effector

When a later probe succeeds again, service.isUp returns to true.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from apporchestra.entity import Entity, EntityTree
from apporchestra.lifecycle import LifecycleManager
from apporchestra.schemas import Lifecycle
from apporchestra.sensors import SERVICE_PROBLEM, SERVICE_UP
from apporchestra.utils import utcnow

logger = logging.getLogger(__name__)

FAILURE_POLICIES = ("publish", "on_fire", "restart")


@dataclass
class MonitorResult:
    """Outcome of one supervision pass."""
    checked: int = 0
    down: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    actions: dict[str, str] = field(default_factory=dict)


class ServiceMonitor:
    """
    Background liveness supervisor.

    Args:
        tree: Entity tree to scan
        lifecycle: Lifecycle engine (probe and ON_FIRE transitions)
        restart: Callback invoking the restart effector on an entity
        interval: Seconds between passes
    """

    def __init__(
        self,
        tree: EntityTree,
        lifecycle: LifecycleManager,
        restart: Optional[Callable[[Entity], None]] = None,
        interval: float = 30.0,
    ):
        self.tree = tree
        self.lifecycle = lifecycle
        self.sensors = lifecycle.sensors
        self._restart = restart
        self.interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._cycle_count = 0

    def start(self) -> None:
        """Start periodic supervision."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Service monitor already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            daemon=True,
            name="ServiceMonitor",
        )
        self._thread.start()
        logger.info(f"Service monitor started (interval: {self.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop periodic supervision."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        logger.info(f"Service monitor stopped ({self._cycle_count} cycles)")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop.wait(timeout=self.interval):
            try:
                self.check_once()
            except Exception as e:
                logger.exception(f"Service monitor pass failed: {e}")

    def check_once(self) -> MonitorResult:
        """Probe every RUNNING driven entity once and apply failure policies."""
        self._cycle_count += 1
        result = MonitorResult()
        for entity in self.tree.all():
            if entity.driverless or entity.state != Lifecycle.RUNNING:
                continue
            result.checked += 1
            try:
                up = self.lifecycle.probe(entity)
            except Exception as e:
                logger.warning(f"Probe of {entity.entity_id} failed: {e}")
                up = False

            was_up = self.sensors.get_value(entity.entity_id, SERVICE_UP, False)
            if up:
                if not was_up:
                    self.sensors.set(entity.entity_id, SERVICE_UP, True)
                    result.recovered.append(entity.entity_id)
                continue

            result.down.append(entity.entity_id)
            if was_up:
                self._handle_down(entity, result)
        return result

    def _handle_down(self, entity: Entity, result: MonitorResult) -> None:
        policy = entity.get_config("failure_policy", "publish")
        if policy not in FAILURE_POLICIES:
            logger.warning(f"{entity.entity_id}: unknown failure_policy '{policy}', using publish")
            policy = "publish"

        logger.warning(
            f"{entity.entity_id} is no longer running (policy: {policy})",
            extra={"entity": entity.entity_id, "event": "monitor.down",
                   "metadata": {"policy": policy}},
        )
        self.sensors.set(entity.entity_id, SERVICE_UP, False)
        self.sensors.set(entity.entity_id, SERVICE_PROBLEM, {
            "phase": "monitor",
            "type": "NotRunning",
            "message": "Process is no longer running",
            "detectedAt": utcnow().isoformat(),
        })
        result.actions[entity.entity_id] = policy

        if policy == "on_fire":
            self.lifecycle.mark_on_fire(entity, "Process is no longer running")
        elif policy == "restart" and self._restart is not None:
            try:
                self._restart(entity)
            except Exception as e:
                logger.error(f"Could not restart {entity.entity_id}: {e}")
