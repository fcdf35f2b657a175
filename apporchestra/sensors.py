"""
Sensor bus - per-entity attribute store with publish/subscribe.

Each (entity, sensor key) holds its latest value with a strictly increasing
version and a timestamp. Subscribers are notified asynchronously on a
shared delivery pool, never on the publisher's thread.

Delivery guarantees:
- Per (sensor, subscriber), notifications arrive in version order
- Each subscriber has a bounded pending buffer; on overflow the oldest
  pending notification is dropped and the subscriber's overflow counter
  is incremented
- Coalescing sensors skip notification when the new value equals the old
"""

import copy
import logging
import threading
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from apporchestra.errors import Cancelled, NotFound, PhaseTimeout
from apporchestra.schemas import SensorDescriptor
from apporchestra.utils import generate_ulid, utcnow

logger = logging.getLogger(__name__)


# Sensors written by the lifecycle engine
SERVICE_STATE = "service.state"
SERVICE_UP = "service.isUp"
SERVICE_PROBLEM = "service.problem"
CHILDREN_STATE = "service.state.children"
ERROR = "error"


@dataclass(frozen=True)
class SensorValue:
    """Latest value of one sensor."""
    entity_id: str
    key: str
    value: Any
    version: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "key": self.key,
            "value": self.value,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
        }


SensorHandler = Callable[[SensorValue], None]


class _Subscription:
    def __init__(
        self,
        sub_id: str,
        entity_id: str,
        key: Optional[str],
        handler: SensorHandler,
        buffer_size: int,
    ):
        self.sub_id = sub_id
        self.entity_id = entity_id
        self.key = key
        self.handler = handler
        self.buffer_size = buffer_size
        self.pending: deque[SensorValue] = deque()
        self.scheduled = False
        self.active = True
        self.overflow_count = 0
        self.lock = threading.Lock()

    def matches(self, key: str) -> bool:
        return self.key is None or self.key == key


class SensorBus:
    """
    Sensor store and notification dispatcher for all entities.

    Args:
        delivery_workers: Size of the shared delivery pool
        buffer_size: Default per-subscriber pending buffer
        executor: Optional executor to deliver on (owned by the caller)
    """

    def __init__(
        self,
        delivery_workers: int = 4,
        buffer_size: int = 64,
        executor: Optional[Executor] = None,
    ):
        self.buffer_size = buffer_size
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=delivery_workers,
            thread_name_prefix="sensor-delivery",
        )
        self._cond = threading.Condition(threading.RLock())
        self._values: dict[str, dict[str, SensorValue]] = {}
        self._descriptors: dict[str, dict[str, SensorDescriptor]] = {}
        self._subscriptions: dict[str, _Subscription] = {}

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def declare(self, entity_id: str, descriptors: dict[str, SensorDescriptor]) -> None:
        """Register the declared sensors of an entity."""
        with self._cond:
            self._descriptors[entity_id] = dict(descriptors)
            self._values.setdefault(entity_id, {})

    def descriptor(self, entity_id: str, key: str) -> Optional[SensorDescriptor]:
        with self._cond:
            return self._descriptors.get(entity_id, {}).get(key)

    def set(self, entity_id: str, key: str, value: Any) -> SensorValue:
        """
        Publish a new sensor value.

        Bumps the version and timestamp atomically and queues notifications
        for matching subscribers. Coalescing sensors skip notification when
        the value is unchanged (the version still advances).

        Returns:
            The stored SensorValue
        """
        value = copy.deepcopy(value)
        with self._cond:
            values = self._values.setdefault(entity_id, {})
            prior = values.get(key)
            stored = SensorValue(
                entity_id=entity_id,
                key=key,
                value=value,
                version=(prior.version + 1) if prior else 1,
                timestamp=utcnow(),
            )
            values[key] = stored
            self._cond.notify_all()

            descriptor = self._descriptors.get(entity_id, {}).get(key)
            if (
                descriptor is not None
                and descriptor.coalescing
                and prior is not None
                and prior.value == value
            ):
                return stored

            # Enqueue under the store lock so per-subscriber order follows version order
            for sub in self._subscriptions.values():
                if sub.entity_id == entity_id and sub.matches(key):
                    self._enqueue(sub, stored)
        return stored

    def get(self, entity_id: str, key: str) -> Optional[SensorValue]:
        """Get the latest value record, or None if never published."""
        with self._cond:
            return self._values.get(entity_id, {}).get(key)

    def get_value(self, entity_id: str, key: str, default: Any = None) -> Any:
        current = self.get(entity_id, key)
        return current.value if current is not None else default

    def snapshot(self, entity_id: str) -> dict[str, SensorValue]:
        """All current sensor values of an entity."""
        with self._cond:
            return dict(self._values.get(entity_id, {}))

    def persistent_values(self, entity_id: str) -> dict[str, dict[str, Any]]:
        """Values of sensors declared persistent, as {key: {value, version}}."""
        with self._cond:
            descriptors = self._descriptors.get(entity_id, {})
            return {
                key: {"value": v.value, "version": v.version}
                for key, v in self._values.get(entity_id, {}).items()
                if key in descriptors and descriptors[key].persistent
            }

    def restore(self, entity_id: str, key: str, value: Any, version: int) -> None:
        """Reinstate a persisted value without notifying subscribers."""
        with self._cond:
            self._values.setdefault(entity_id, {})[key] = SensorValue(
                entity_id=entity_id,
                key=key,
                value=value,
                version=version,
                timestamp=utcnow(),
            )

    def remove_entity(self, entity_id: str) -> None:
        """Drop an entity's values and subscriptions."""
        with self._cond:
            self._values.pop(entity_id, None)
            self._descriptors.pop(entity_id, None)
            for sub_id in [s for s, sub in self._subscriptions.items() if sub.entity_id == entity_id]:
                self._subscriptions.pop(sub_id).active = False

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        entity_id: str,
        key: Optional[str],
        handler: SensorHandler,
        buffer_size: Optional[int] = None,
    ) -> str:
        """
        Subscribe to one sensor key (or every key when ``key`` is None).

        Returns:
            Subscription id
        """
        sub = _Subscription(
            sub_id=generate_ulid(),
            entity_id=entity_id,
            key=key,
            handler=handler,
            buffer_size=buffer_size or self.buffer_size,
        )
        with self._cond:
            self._subscriptions[sub.sub_id] = sub
        logger.debug(f"Subscribed {sub.sub_id} to {entity_id}:{key or '*'}")
        return sub.sub_id

    def unsubscribe(self, sub_id: str) -> None:
        """
        Remove a subscription; pending notifications are discarded.

        Raises:
            NotFound: If the subscription is unknown
        """
        with self._cond:
            sub = self._subscriptions.pop(sub_id, None)
        if sub is None:
            raise NotFound(f"Unknown subscription: {sub_id}")
        with sub.lock:
            sub.active = False
            sub.pending.clear()

    def overflow_count(self, sub_id: str) -> int:
        """Number of notifications dropped for a subscription."""
        with self._cond:
            sub = self._subscriptions.get(sub_id)
        if sub is None:
            raise NotFound(f"Unknown subscription: {sub_id}")
        return sub.overflow_count

    def _enqueue(self, sub: _Subscription, value: SensorValue) -> None:
        with sub.lock:
            if not sub.active:
                return
            if len(sub.pending) >= sub.buffer_size:
                sub.pending.popleft()
                sub.overflow_count += 1
            sub.pending.append(value)
            if sub.scheduled:
                return
            sub.scheduled = True
        self._executor.submit(self._drain, sub)

    def _drain(self, sub: _Subscription) -> None:
        # One drainer per subscription at a time keeps delivery ordered
        while True:
            with sub.lock:
                if not sub.active or not sub.pending:
                    sub.scheduled = False
                    return
                value = sub.pending.popleft()
            try:
                sub.handler(value)
            except Exception:
                logger.exception(
                    f"Sensor handler {sub.sub_id} failed on {value.entity_id}:{value.key}"
                )

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def wait_for_sensor(
        self,
        entity_id: str,
        key: str,
        predicate: Callable[[Any], bool],
        timeout: Optional[float] = None,
        token: Any = None,
    ) -> Any:
        """
        Block until the sensor's value satisfies ``predicate``.

        Args:
            entity_id: Entity to watch
            key: Sensor key
            predicate: Called with the current value (None when unset)
            timeout: Seconds to wait (None = forever)
            token: Optional cancellation token that wakes the wait

        Returns:
            The satisfying value

        Raises:
            PhaseTimeout: If ``timeout`` elapses first
            Cancelled: If the token is cancelled first
        """
        remove_callback = None
        if token is not None:
            def wake() -> None:
                with self._cond:
                    self._cond.notify_all()

            remove_callback = token.add_callback(wake)

        def ready() -> bool:
            if token is not None and token.is_cancelled:
                return True
            return predicate(self.get_value(entity_id, key))

        try:
            with self._cond:
                satisfied = self._cond.wait_for(ready, timeout=timeout)
                if token is not None and token.is_cancelled:
                    raise Cancelled(token.reason or "Cancelled")
                if not satisfied:
                    raise PhaseTimeout(f"wait for {key}", timeout or 0)
                return self.get_value(entity_id, key)
        finally:
            if remove_callback is not None:
                remove_callback()

    def shutdown(self, wait: bool = True) -> None:
        """Stop the delivery pool if this bus created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=wait)


class EntitySensors:
    """Sensor read/write capability scoped to one entity."""

    def __init__(self, bus: SensorBus, entity_id: str):
        self._bus = bus
        self.entity_id = entity_id

    def set(self, key: str, value: Any) -> SensorValue:
        return self._bus.set(self.entity_id, key, value)

    def get(self, key: str, default: Any = None) -> Any:
        return self._bus.get_value(self.entity_id, key, default)
