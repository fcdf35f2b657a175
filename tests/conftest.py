"""Shared fixtures: fake clock, driver, provider and a wired ApplicationManager."""

import threading
from collections import deque
from concurrent.futures import Executor, Future
from unittest.mock import MagicMock

import pytest

from apporchestra.catalog import EntityTypeRegistry
from apporchestra.config import ApporchestraConfig
from apporchestra.drivers import Driver
from apporchestra.errors import InternalInvariant
from apporchestra.locations import LocationStore
from apporchestra.machines import MachineDetails, MachineHandle, MachineProvider, ProviderRegistry
from apporchestra.manager import ApplicationManager
from apporchestra.persistence import InMemoryStateStore
from apporchestra.remote import RemoteExecutor
from apporchestra.schemas import EffectorDescriptor, EntityTypeSpec, Location
from apporchestra.utils import Clock, generate_ulid


class FakeClock(Clock):
    """Clock whose sleeps advance virtual time instantly and fire scheduled callbacks."""

    def __init__(self):
        self.time = 0.0
        self.sleeps = []
        self._scheduled = []
        self._lock = threading.Lock()

    def now(self):
        with self._lock:
            return self.time

    def at(self, when, callback):
        with self._lock:
            self._scheduled.append((when, callback))

    def sleep(self, seconds, token=None):
        with self._lock:
            self.sleeps.append(seconds)
            self.time += max(seconds, 0)
            due = [item for item in self._scheduled if item[0] <= self.time]
            self._scheduled = [item for item in self._scheduled if item[0] > self.time]
        for _, callback in due:
            callback()
        if token is not None:
            token.raise_if_cancelled()


class ManualExecutor(Executor):
    """Executor that only runs submitted work when run_all() is called."""

    def __init__(self):
        self.pending = deque()
        self._lock = threading.Lock()

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        with self._lock:
            self.pending.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        while True:
            with self._lock:
                if not self.pending:
                    return
                future, fn, args, kwargs = self.pending.popleft()
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)


class FakeDriver(Driver):
    """
    Driver recording phase calls.

    errors maps a phase name to the exception it raises. running overrides
    liveness: None follows launch/stop, a bool is fixed, a callable is polled.
    """

    def __init__(self, running=None):
        self.calls = []
        self.errors = {}
        self.running = running
        self.launched = False
        self.restart_gate = None
        self.restart_started = threading.Event()

    def _phase(self, name):
        self.calls.append(name)
        error = self.errors.get(name)
        if error is not None:
            raise error

    def install(self, ctx):
        self._phase("install")

    def customize(self, ctx):
        self._phase("customize")

    def launch(self, ctx):
        self._phase("launch")
        self.launched = True

    def is_running(self, ctx):
        if self.running is None:
            return self.launched
        if callable(self.running):
            return bool(self.running())
        return self.running

    def stop(self, ctx):
        self._phase("stop")
        self.launched = False

    def restart(self, ctx):
        self.calls.append("restart")
        self.restart_started.set()
        if self.restart_gate is not None:
            self.restart_gate.wait(10)
        self.launched = True

    def explode(self, ctx):
        raise InternalInvariant("machine handle released twice")


class FakeProvider(MachineProvider):
    """Provider handing out fake handles and recording releases."""

    tag = "fake"

    def __init__(self):
        super().__init__()
        self.obtained = []
        self.released = []

    def obtain(self, location, constraints=None, token=None):
        if token is not None:
            token.raise_if_cancelled()
        handle = MachineHandle(
            handle_id=generate_ulid(),
            location_id=location.location_id,
            hostname="fake-host",
        )
        self.obtained.append(handle)
        return handle

    def _release(self, handle):
        self.released.append(handle.handle_id)

    def describe(self, handle):
        return MachineDetails("linux", "x86_64", ("10.0.0.1",))


def make_catalog():
    catalog = EntityTypeRegistry.create_default()
    catalog.register(
        EntityTypeSpec(
            type_tag="fake-service",
            parent="software-process",
            description="Service driven by FakeDriver",
            effectors=(EffectorDescriptor("explode", description="Raise an internal error"),),
        ),
        driver_factory=FakeDriver,
    )
    catalog.register(
        EntityTypeSpec(type_tag="steady-service", parent="software-process"),
        driver_factory=lambda: FakeDriver(running=True),
    )
    return catalog


def app_plan(*children, app_id="app1"):
    """Plan dict for an application at loc-local with the given (id, type) children."""
    return {
        "id": app_id,
        "name": app_id,
        "locations": ["loc-local"],
        "children": [{"id": cid, "name": cid, "type": ctype} for cid, ctype in children],
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sensor_executor():
    return ManualExecutor()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def providers(provider):
    registry = ProviderRegistry.create_default()
    registry.register("fake", lambda location: provider)
    return registry


@pytest.fixture
def locations():
    return LocationStore([Location("loc-local", "local", "fake")])


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def test_config():
    return ApporchestraConfig(monitor_interval=0)


@pytest.fixture
def manager(test_config, catalog, locations, providers, store, clock, sensor_executor):
    m = ApplicationManager(
        config=test_config,
        catalog=catalog,
        locations=locations,
        providers=providers,
        remote=MagicMock(spec=RemoteExecutor),
        store=store,
        clock=clock,
        sensor_executor=sensor_executor,
    )
    yield m
    m.shutdown(wait=False)


@pytest.fixture
def started(manager):
    """Start an application and wait for it; returns a helper."""

    def start(*children, app_id="app1"):
        manager.create_application(app_plan(*children, app_id=app_id))
        task_id = manager.start_application(app_id)
        return manager.wait_for_task(task_id, timeout=10)

    return start
