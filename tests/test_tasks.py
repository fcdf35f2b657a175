"""Tests for cancellation tokens and the task registry."""

import threading
import time

import pytest

from apporchestra.errors import Cancelled, NotFound, PreconditionFailed, ScriptFailed
from apporchestra.schemas import TaskState
from apporchestra.tasks import CancellationToken, TaskHandle, TaskRegistry


@pytest.fixture
def registry():
    return TaskRegistry()


class TestCancellationToken:
    """Tests for token trees and deadlines."""

    def test_cancel_sets_reason(self):
        token = CancellationToken()
        token.cancel("stop requested")

        assert token.is_cancelled
        assert token.reason == "stop requested"
        with pytest.raises(Cancelled, match="stop requested"):
            token.raise_if_cancelled()

    def test_cancel_propagates_to_children(self):
        parent = CancellationToken()
        child = parent.child()
        grandchild = child.child()

        parent.cancel("bye")

        assert child.is_cancelled
        assert grandchild.is_cancelled
        assert grandchild.reason == "bye"

    def test_child_of_cancelled_parent(self):
        parent = CancellationToken()
        parent.cancel()

        assert parent.child().is_cancelled

    def test_child_cancel_does_not_touch_parent(self):
        parent = CancellationToken()
        child = parent.child()
        child.cancel()

        assert not parent.is_cancelled

    def test_child_timeout(self):
        parent = CancellationToken()
        child = parent.child(timeout=0.05)

        assert child.wait(5)
        assert child.timed_out
        assert not parent.is_cancelled

    def test_close_stops_timer(self):
        child = CancellationToken().child(timeout=0.05)
        child.close()
        time.sleep(0.1)

        assert not child.is_cancelled

    def test_callbacks(self):
        token = CancellationToken()
        calls = []
        token.add_callback(lambda: calls.append("a"))
        remove = token.add_callback(lambda: calls.append("b"))
        remove()
        token.cancel()

        assert calls == ["a"]

    def test_callback_on_cancelled_token_runs_now(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append(1))

        assert calls == [1]


class TestTaskRegistry:
    """Tests for task records and their state machine."""

    def test_create_is_queued(self, registry):
        record = registry.create("e1", "start", application_id="app1")

        assert record.state == TaskState.QUEUED
        assert registry.get(record.task_id) is record

    def test_unknown_task(self, registry):
        with pytest.raises(NotFound):
            registry.get("missing")

    def test_unknown_parent(self, registry):
        with pytest.raises(NotFound):
            registry.create("e1", "start", parent_id="missing")

    def test_children_index(self, registry):
        parent = registry.create("app1", "start")
        a = registry.create("a", "start", parent_id=parent.task_id)
        b = registry.create("b", "start", parent_id=parent.task_id)

        assert [c.task_id for c in registry.children(parent.task_id)] == [a.task_id, b.task_id]

    def test_complete_success(self, registry):
        record = registry.create("e1", "start")
        registry.mark_running(record.task_id)
        registry.complete(record.task_id, result={"ok": True})

        assert record.state == TaskState.SUCCEEDED
        assert record.result == {"ok": True}
        assert record.completed_at is not None

    def test_complete_failure(self, registry):
        record = registry.create("e1", "install")
        registry.complete(record.task_id, error=ScriptFailed("install", 2))

        assert record.state == TaskState.FAILED
        assert record.error["type"] == "ScriptFailed"
        assert record.error["exitCode"] == 2

    def test_return_after_cancel_is_cancelled(self, registry):
        record = registry.create("e1", "start")
        registry.mark_running(record.task_id)
        registry.cancel(record.task_id, "operator")
        registry.complete(record.task_id, result=None)

        assert record.state == TaskState.CANCELLED
        assert record.error["message"] == "operator"

    def test_mark_running_twice(self, registry):
        record = registry.create("e1", "start")
        registry.mark_running(record.task_id)

        with pytest.raises(PreconditionFailed):
            registry.mark_running(record.task_id)

    def test_cancel_cascades(self, registry):
        parent = registry.create("app1", "start")
        child = registry.create("a", "start", parent_id=parent.task_id)
        grandchild = registry.create("a", "install", parent_id=child.task_id)

        registry.cancel(parent.task_id)

        assert registry.token(child.task_id).is_cancelled
        assert registry.token(grandchild.task_id).is_cancelled

    def test_cancel_skips_finished(self, registry):
        parent = registry.create("app1", "start")
        done = registry.create("a", "start", parent_id=parent.task_id)
        registry.complete(done.task_id)

        registry.cancel(parent.task_id)

        assert done.state == TaskState.SUCCEEDED

    def test_wait(self, registry):
        record = registry.create("e1", "start")
        timer = threading.Timer(0.05, lambda: registry.complete(record.task_id))
        timer.start()

        assert registry.wait(record.task_id, timeout=5).state == TaskState.SUCCEEDED

    def test_list_filters(self, registry):
        registry.create("a", "start", application_id="app1")
        registry.create("b", "start", application_id="app2")

        assert [r.entity_id for r in registry.list_tasks(application_id="app1")] == ["a"]
        assert [r.entity_id for r in registry.list_tasks(entity_id="b")] == ["b"]

    def test_active_excludes_finished(self, registry):
        done = registry.create("a", "start", application_id="app1")
        pending = registry.create("b", "start", application_id="app1")
        registry.create("c", "start", application_id="app2")
        registry.complete(done.task_id)

        assert [r.task_id for r in registry.active("app1")] == [pending.task_id]

    def test_discard_active_rejected(self, registry):
        parent = registry.create("app1", "start")
        registry.create("a", "start", parent_id=parent.task_id)
        registry.complete(parent.task_id)

        with pytest.raises(PreconditionFailed):
            registry.discard(parent.task_id)

    def test_discard_subtree(self, registry):
        parent = registry.create("app1", "start")
        child = registry.create("a", "start", parent_id=parent.task_id)
        registry.complete(child.task_id)
        registry.complete(parent.task_id)

        registry.discard(parent.task_id)

        with pytest.raises(NotFound):
            registry.get(child.task_id)

    def test_discard_application(self, registry):
        registry.create("a", "start", application_id="app1")
        registry.create("b", "start", application_id="app1")

        assert registry.discard_application("app1") == 2
        assert registry.list_tasks() == []

    def test_listener_runs_on_completion(self, registry):
        seen = []
        registry.add_listener(lambda r: seen.append(r.state))
        record = registry.create("e1", "start")
        registry.complete(record.task_id)

        assert seen == [TaskState.SUCCEEDED]


class TestRunInline:
    """Nested work recorded as child tasks."""

    def test_child_of_current_task(self, registry):
        parent = registry.create("app1", "start")
        with registry.bind(parent.task_id):
            result = registry.run_inline("a", "install", lambda token: "done")

        child = registry.children(parent.task_id)[0]
        assert result == "done"
        assert child.name == "install"
        assert child.state == TaskState.SUCCEEDED

    def test_error_recorded_and_raised(self, registry):
        def body(token):
            raise ScriptFailed("launch", 1)

        with pytest.raises(ScriptFailed):
            registry.run_inline("a", "launch", body)

        assert registry.list_tasks()[0].state == TaskState.FAILED

    def test_cancelled_parent_cancels_inline_token(self, registry):
        parent = registry.create("app1", "start")
        registry.cancel(parent.task_id)

        def body(token):
            token.raise_if_cancelled()

        with registry.bind(parent.task_id):
            with pytest.raises(Cancelled):
                registry.run_inline("a", "install", body)


class TestTaskHandle:
    """Tests for the caller-side handle."""

    def test_handle_reflects_record(self, registry):
        record = registry.create("e1", "start")
        handle = TaskHandle(registry, record.task_id)

        handle.cancel()
        registry.complete(record.task_id)

        assert handle.state == TaskState.CANCELLED
        assert handle.wait(1).state == TaskState.CANCELLED
