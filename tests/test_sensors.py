"""Tests for the sensor bus: versioning, ordered delivery, overflow and waiting."""

import threading

import pytest

from apporchestra.errors import Cancelled, NotFound, PhaseTimeout
from apporchestra.schemas import SensorDescriptor
from apporchestra.sensors import EntitySensors, SensorBus
from apporchestra.tasks import CancellationToken

from conftest import ManualExecutor


@pytest.fixture
def executor():
    return ManualExecutor()


@pytest.fixture
def bus(executor):
    bus = SensorBus(executor=executor)
    bus.declare("e1", {
        "s.x": SensorDescriptor("s.x"),
        "state": SensorDescriptor("state", coalescing=True, persistent=True),
    })
    return bus


class TestSensorStore:
    """Tests for set/get and versioning."""

    def test_versions_increase(self, bus):
        first = bus.set("e1", "s.x", 1)
        second = bus.set("e1", "s.x", 2)

        assert first.version == 1
        assert second.version == 2
        assert bus.get_value("e1", "s.x") == 2

    def test_unset_sensor(self, bus):
        assert bus.get("e1", "s.y") is None
        assert bus.get_value("e1", "s.y", "dflt") == "dflt"

    def test_values_are_copied(self, bus):
        value = {"a": [1]}
        bus.set("e1", "s.x", value)
        value["a"].append(2)

        assert bus.get_value("e1", "s.x") == {"a": [1]}

    def test_persistent_values(self, bus):
        bus.set("e1", "s.x", 1)
        bus.set("e1", "state", "RUNNING")

        assert bus.persistent_values("e1") == {"state": {"value": "RUNNING", "version": 1}}

    def test_restore_keeps_version(self, bus):
        bus.restore("e1", "state", "STOPPED", 7)

        assert bus.get("e1", "state").version == 7
        assert bus.set("e1", "state", "STARTING").version == 8

    def test_remove_entity(self, bus, executor):
        delivered = []
        bus.subscribe("e1", "s.x", delivered.append)
        bus.remove_entity("e1")
        bus.set("e1", "s.x", 1)
        executor.run_all()

        assert delivered == []

    def test_entity_sensors_scope(self, bus):
        sensors = EntitySensors(bus, "e1")
        sensors.set("s.x", 5)

        assert sensors.get("s.x") == 5
        assert bus.get_value("e1", "s.x") == 5


class TestDelivery:
    """Tests for subscription delivery."""

    def test_ordered_delivery(self, bus, executor):
        delivered = []
        bus.subscribe("e1", "s.x", delivered.append)

        for value in (1, 2, 3):
            bus.set("e1", "s.x", value)
        executor.run_all()

        assert [v.value for v in delivered] == [1, 2, 3]
        assert [v.version for v in delivered] == [1, 2, 3]

    def test_key_filter(self, bus, executor):
        delivered = []
        bus.subscribe("e1", "s.x", delivered.append)

        bus.set("e1", "state", "RUNNING")
        bus.set("e1", "s.x", 1)
        executor.run_all()

        assert [v.key for v in delivered] == ["s.x"]

    def test_wildcard_subscription(self, bus, executor):
        delivered = []
        bus.subscribe("e1", None, delivered.append)

        bus.set("e1", "state", "RUNNING")
        bus.set("e1", "s.x", 1)
        executor.run_all()

        assert [v.key for v in delivered] == ["state", "s.x"]

    def test_coalescing_skips_equal_values(self, bus, executor):
        delivered = []
        bus.subscribe("e1", "state", delivered.append)

        bus.set("e1", "state", "RUNNING")
        bus.set("e1", "state", "RUNNING")
        bus.set("e1", "state", "STOPPING")
        executor.run_all()

        assert [v.value for v in delivered] == ["RUNNING", "STOPPING"]
        assert bus.get("e1", "state").version == 3

    def test_non_coalescing_delivers_duplicates(self, bus, executor):
        delivered = []
        bus.subscribe("e1", "s.x", delivered.append)

        bus.set("e1", "s.x", 1)
        bus.set("e1", "s.x", 1)
        executor.run_all()

        assert len(delivered) == 2

    def test_overflow_drops_oldest(self, bus, executor):
        """1000 rapid events into a 64-slot buffer drop 936 and keep the latest."""
        delivered = []
        sub_id = bus.subscribe("e1", "s.x", delivered.append, buffer_size=64)

        for value in range(1000):
            bus.set("e1", "s.x", value)

        assert bus.overflow_count(sub_id) == 936
        executor.run_all()

        assert len(delivered) == 64
        assert delivered[-1].value == 999
        versions = [v.version for v in delivered]
        assert versions == sorted(versions)
        assert len(set(versions)) == len(versions)

    def test_unsubscribe_discards_pending(self, bus, executor):
        delivered = []
        sub_id = bus.subscribe("e1", "s.x", delivered.append)
        bus.set("e1", "s.x", 1)
        bus.unsubscribe(sub_id)
        executor.run_all()

        assert delivered == []

    def test_unsubscribe_unknown(self, bus):
        with pytest.raises(NotFound):
            bus.unsubscribe("nope")

    def test_handler_error_does_not_stop_delivery(self, bus, executor):
        delivered = []

        def handler(value):
            if value.value == 1:
                raise RuntimeError("boom")
            delivered.append(value.value)

        bus.subscribe("e1", "s.x", handler)
        bus.set("e1", "s.x", 1)
        bus.set("e1", "s.x", 2)
        executor.run_all()

        assert delivered == [2]

    def test_threaded_delivery_is_ordered(self):
        """With a real pool, each subscriber still sees strictly increasing versions."""
        bus = SensorBus(delivery_workers=4, buffer_size=2000)
        try:
            seen = []
            done = threading.Event()

            def handler(value):
                seen.append(value.version)
                if value.value == 499:
                    done.set()

            bus.subscribe("e1", "s.x", handler)
            for value in range(500):
                bus.set("e1", "s.x", value)

            assert done.wait(10)
            assert seen == sorted(seen)
            assert len(seen) == 500
        finally:
            bus.shutdown()


class TestWaitForSensor:
    """Tests for the wait_for_sensor primitive."""

    def test_already_satisfied(self, bus):
        bus.set("e1", "state", "RUNNING")

        assert bus.wait_for_sensor("e1", "state", lambda v: v == "RUNNING", timeout=1) == "RUNNING"

    def test_wakes_on_publish(self, bus):
        timer = threading.Timer(0.05, lambda: bus.set("e1", "state", "RUNNING"))
        timer.start()
        try:
            value = bus.wait_for_sensor("e1", "state", lambda v: v == "RUNNING", timeout=5)
        finally:
            timer.cancel()

        assert value == "RUNNING"

    def test_timeout(self, bus):
        with pytest.raises(PhaseTimeout):
            bus.wait_for_sensor("e1", "state", lambda v: v == "RUNNING", timeout=0.05)

    def test_cancelled(self, bus):
        token = CancellationToken()
        timer = threading.Timer(0.05, token.cancel)
        timer.start()
        try:
            with pytest.raises(Cancelled):
                bus.wait_for_sensor("e1", "state", lambda v: v == "RUNNING", timeout=5, token=token)
        finally:
            timer.cancel()
