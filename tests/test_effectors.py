"""Tests for the effector runtime: validation, state checks and exclusivity."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from apporchestra.errors import BadArgument, NotFound, PreconditionFailed, ScriptFailed
from apporchestra.schemas import Lifecycle, TaskState
from apporchestra.sensors import ERROR

from conftest import app_plan


class TestInvokeValidation:
    """Synchronous rejections create no task."""

    def test_unknown_effector(self, manager):
        manager.create_application(app_plan(("web", "noop-service")))

        with pytest.raises(NotFound):
            manager.invoke("web", "teleport")
        assert manager.list_tasks("app1") == []

    def test_unknown_argument(self, manager):
        manager.create_application(app_plan(("web", "noop-service")))

        with pytest.raises(BadArgument):
            manager.invoke("web", "start", {"colour": "red"})

    def test_mistyped_argument(self, manager):
        manager.create_application(app_plan(("web", "noop-service")))

        with pytest.raises(BadArgument):
            manager.invoke("app1", "start", {"locations": "loc-local"})

    def test_state_not_allowed(self, manager):
        """restart is not allowed on an UNINITIALIZED entity."""
        manager.create_application(app_plan(("web", "noop-service")))

        with pytest.raises(PreconditionFailed):
            manager.invoke("web", "restart")
        assert manager.list_tasks("app1") == []

    def test_unknown_entity(self, manager):
        with pytest.raises(NotFound):
            manager.invoke("ghost", "start")


class TestExclusiveSerialization:
    """Exclusive effectors run one task per (entity, name) at a time."""

    def test_concurrent_restarts_queue(self, manager, started):
        started(("svc", "fake-service"))
        driver = manager.get_entity("svc").driver
        driver.restart_gate = threading.Event()

        first = manager.invoke("svc", "restart")
        assert driver.restart_started.wait(10)
        second = manager.invoke("svc", "restart")

        assert manager.get_task(first).state == TaskState.RUNNING
        assert manager.get_task(second).state == TaskState.QUEUED
        assert manager.runtime.queued("svc", "restart") == [first, second]

        driver.restart_gate.set()
        first_record = manager.wait_for_task(first, timeout=10)
        second_record = manager.wait_for_task(second, timeout=10)

        assert first_record.state == TaskState.SUCCEEDED
        assert second_record.state == TaskState.SUCCEEDED
        assert second_record.started_at >= first_record.completed_at
        assert driver.calls.count("restart") == 2
        assert manager.get_entity("svc").state == Lifecycle.RUNNING

    def test_cancelled_while_queued(self, manager, started):
        started(("svc", "fake-service"))
        driver = manager.get_entity("svc").driver
        driver.restart_gate = threading.Event()

        first = manager.invoke("svc", "restart")
        assert driver.restart_started.wait(10)
        second = manager.invoke("svc", "restart")
        manager.cancel_task(second)
        driver.restart_gate.set()

        assert manager.wait_for_task(first, timeout=10).state == TaskState.SUCCEEDED
        assert manager.wait_for_task(second, timeout=10).state == TaskState.CANCELLED
        assert driver.calls.count("restart") == 1

    def test_no_overlap_under_load(self, manager, started):
        """Many concurrent restarts never overlap."""
        started(("svc", "fake-service"))
        driver = manager.get_entity("svc").driver
        lock = threading.Lock()
        active = []
        overlaps = []

        def restart(ctx):
            with lock:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(len(active))
            driver.calls.append("restart")
            with lock:
                active.pop()

        driver.restart = restart
        with ThreadPoolExecutor(max_workers=4) as pool:
            task_ids = list(pool.map(lambda _: _invoke_when_allowed(manager), range(8)))

        records = [manager.wait_for_task(t, timeout=10) for t in task_ids if t]
        assert overlaps == []
        assert all(r.state.is_done for r in records)


def _invoke_when_allowed(manager):
    try:
        return manager.invoke("svc", "restart")
    except PreconditionFailed:
        # Entity briefly left RUNNING between queue drains
        return None


class TestFailureRecording:
    """Failures are recorded on the task and as the error sensor."""

    def test_error_sensor_published(self, manager, started):
        started(("svc", "fake-service"))
        manager.get_entity("svc").driver.errors["stop"] = ScriptFailed("stop", 3)

        record = manager.wait_for_task(manager.invoke("svc", "stop"), timeout=10)

        assert record.state == TaskState.FAILED
        error = manager.get_sensor("svc", ERROR)
        assert error["type"] == "ScriptFailed"
        assert error["exitCode"] == 3
        assert error["effector"] == "stop"
        assert error["task"] == record.task_id

    def test_driver_effector_dispatch(self, manager, started):
        """Effectors without a registered body call the driver method."""
        started(("svc", "fake-service"))

        record = manager.wait_for_task(manager.invoke("svc", "explode"), timeout=10)

        assert record.state == TaskState.FAILED
        assert record.error["type"] == "InternalInvariant"

    def test_describe_lists_allowed_states(self, manager):
        manager.create_application(app_plan(("svc", "fake-service")))

        effectors = {e["name"]: e for e in manager.list_effectors("svc")}
        assert "STARTING" not in effectors["stop"]["allowed_states"]
        assert effectors["start"]["exclusive"] is True
        assert effectors["explode"]["allowed_states"] is None
