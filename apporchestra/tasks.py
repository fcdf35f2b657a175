"""
Tasks - records, cancellation tokens, and the task arena.

The TaskRegistry is an arena of TaskRecords keyed by id. Records point at
their parent by id; a secondary index maps a parent id to its children so
cancellation can walk a subtree without reference cycles.

Every task carries a CancellationToken. Tokens are advisory: cancelling
one wakes any cancellable wait on it (and on its child tokens) but the
task only reaches CANCELLED once its body returns control.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from apporchestra.errors import (
    Cancelled,
    NotFound,
    PreconditionFailed,
    error_to_dict,
)
from apporchestra.schemas import TaskRecord, TaskState
from apporchestra.utils import generate_ulid, utcnow

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Advisory cancellation signal shared between a task and its body.

    Tokens form a tree: cancelling a token cancels every child token.
    A child may also carry a deadline, after which it cancels itself with
    ``timed_out`` set.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._children: list["CancellationToken"] = []
        self._parent = parent
        self._timer: Optional[threading.Timer] = None
        self.reason: Optional[str] = None
        self.timed_out = False
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancellationToken") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
            reason = self.reason
        child.cancel(reason or "Cancelled")

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled") -> None:
        """Signal cancellation to this token and all of its children."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            children = list(self._children)
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")
        for child in children:
            child.cancel(reason)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        """Raise Cancelled if this token has been cancelled."""
        if self._event.is_set():
            raise Cancelled(self.reason or "Cancelled")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback run once on cancellation.

        Runs immediately if already cancelled.

        Returns:
            A function that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return remove
        callback()
        return lambda: None

    def child(self, timeout: Optional[float] = None) -> "CancellationToken":
        """
        Create a linked child token.

        Args:
            timeout: Optional budget in seconds after which the child
                cancels itself with ``timed_out`` set

        Returns:
            The child token; call close() on it when the guarded work ends
        """
        token = CancellationToken(parent=self)
        if timeout is not None:
            def expire() -> None:
                token.timed_out = True
                token.cancel(f"Timed out after {timeout:g}s")

            token._timer = threading.Timer(timeout, expire)
            token._timer.daemon = True
            token._timer.start()
        return token

    def close(self) -> None:
        """Stop any deadline timer and unlink from the parent."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        parent = self._parent
        if parent is not None:
            with parent._lock:
                if self in parent._children:
                    parent._children.remove(self)
            self._parent = None


class TaskHandle:
    """Caller-side handle for a submitted task."""

    def __init__(self, registry: "TaskRegistry", task_id: str):
        self._registry = registry
        self.task_id = task_id

    @property
    def record(self) -> TaskRecord:
        return self._registry.get(self.task_id)

    @property
    def state(self) -> TaskState:
        return self.record.state

    def wait(self, timeout: Optional[float] = None) -> TaskRecord:
        """Block until the task is done or ``timeout`` elapses."""
        return self._registry.wait(self.task_id, timeout)

    def cancel(self, reason: str = "Cancelled by operator") -> None:
        self._registry.cancel(self.task_id, reason)

    def __repr__(self) -> str:
        return f"TaskHandle(task_id={self.task_id}, state={self.state.value})"


class TaskRegistry:
    """
    Arena of task records keyed by id.

    Records are retained until explicitly discarded or their application
    is discarded. Thread-safe: all mutations happen under one condition.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.RLock())
        self._records: dict[str, TaskRecord] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._children: dict[str, list[str]] = {}
        self._listeners: list[Callable[[TaskRecord], None]] = []
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Current-task tracking (per thread)
    # ------------------------------------------------------------------

    def current_task_id(self) -> Optional[str]:
        """Id of the task whose body is running on this thread, if any."""
        stack = getattr(self._local, "stack", None)
        return stack[-1] if stack else None

    @contextmanager
    def bind(self, task_id: str) -> Iterator[None]:
        """Mark ``task_id`` as the current task for the duration of the block."""
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        stack.append(task_id)
        try:
            yield
        finally:
            stack.pop()

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        entity_id: str,
        name: str,
        application_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        args: Optional[dict[str, Any]] = None,
    ) -> TaskRecord:
        """
        Create a QUEUED task, linked under ``parent_id`` if given.

        Raises:
            NotFound: If parent_id is unknown
        """
        with self._cond:
            parent_token = None
            if parent_id is not None:
                if parent_id not in self._records:
                    raise NotFound(f"Unknown parent task: {parent_id}")
                parent_token = self._tokens[parent_id]

            record = TaskRecord(
                task_id=generate_ulid(),
                entity_id=entity_id,
                name=name,
                application_id=application_id,
                parent_id=parent_id,
                args=dict(args or {}),
            )
            self._records[record.task_id] = record
            self._tokens[record.task_id] = (
                parent_token.child() if parent_token is not None else CancellationToken()
            )
            self._children[record.task_id] = []
            if parent_id is not None:
                self._children[parent_id].append(record.task_id)
            return record

    def get(self, task_id: str) -> TaskRecord:
        """
        Get a task record by id.

        Raises:
            NotFound: If the task is unknown
        """
        with self._cond:
            record = self._records.get(task_id)
        if record is None:
            raise NotFound(f"Unknown task: {task_id}")
        return record

    def token(self, task_id: str) -> CancellationToken:
        with self._cond:
            if task_id not in self._tokens:
                raise NotFound(f"Unknown task: {task_id}")
            return self._tokens[task_id]

    def children(self, task_id: str) -> list[TaskRecord]:
        """Direct children of a task, in creation order."""
        with self._cond:
            return [self._records[c] for c in self._children.get(task_id, []) if c in self._records]

    def list_tasks(
        self,
        application_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[TaskRecord]:
        """List tasks, optionally filtered by application or entity."""
        with self._cond:
            records = list(self._records.values())
        if application_id is not None:
            records = [r for r in records if r.application_id == application_id]
        if entity_id is not None:
            records = [r for r in records if r.entity_id == entity_id]
        return sorted(records, key=lambda r: r.submitted_at)

    def active(self, application_id: Optional[str] = None) -> list[TaskRecord]:
        """Tasks not yet in a terminal state."""
        return [r for r in self.list_tasks(application_id=application_id) if not r.state.is_done]

    def mark_running(self, task_id: str) -> None:
        with self._cond:
            record = self.get(task_id)
            if record.state != TaskState.QUEUED:
                raise PreconditionFailed(
                    f"Task {task_id} cannot start from state {record.state.value}"
                )
            record.state = TaskState.RUNNING
            record.started_at = utcnow()
            self._cond.notify_all()

    def complete(
        self,
        task_id: str,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> TaskRecord:
        """
        Move a task to its terminal state.

        A Cancelled error, or a normal return after the token was cancelled,
        yields CANCELLED; any other error yields FAILED.
        """
        with self._cond:
            record = self.get(task_id)
            token = self._tokens[task_id]
            if isinstance(error, Cancelled):
                record.state = TaskState.CANCELLED
                record.error = error_to_dict(error)
            elif error is not None:
                record.state = TaskState.FAILED
                record.error = error_to_dict(error)
            elif token.is_cancelled:
                record.state = TaskState.CANCELLED
                record.result = result
                record.error = {"type": "Cancelled", "message": token.reason or "Cancelled"}
            else:
                record.state = TaskState.SUCCEEDED
                record.result = result
            record.completed_at = utcnow()
            token.close()
            listeners = list(self._listeners)
            self._cond.notify_all()

        for listener in listeners:
            try:
                listener(record)
            except Exception:
                logger.exception(f"Task listener failed for {task_id}")
        return record

    def cancel(self, task_id: str, reason: str = "Cancelled by operator") -> None:
        """
        Cancel a task and every descendant task.

        Raises:
            NotFound: If the task is unknown
        """
        with self._cond:
            if task_id not in self._records:
                raise NotFound(f"Unknown task: {task_id}")
            pending = [task_id]
            tokens = []
            while pending:
                current = pending.pop()
                record = self._records.get(current)
                if record is None or record.state.is_done:
                    continue
                tokens.append(self._tokens[current])
                pending.extend(self._children.get(current, []))
        logger.info(f"Cancelling task {task_id}: {reason}")
        for token in tokens:
            token.cancel(reason)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> TaskRecord:
        """Block until the task is done or ``timeout`` elapses; return the record."""
        with self._cond:
            record = self.get(task_id)
            self._cond.wait_for(lambda: record.state.is_done, timeout=timeout)
            return record

    def discard(self, task_id: str) -> None:
        """
        Forget a finished task and its finished descendants.

        Raises:
            PreconditionFailed: If the task or a descendant is still active
        """
        with self._cond:
            subtree = self._subtree(task_id)
            active = [t for t in subtree if not self._records[t].state.is_done]
            if active:
                raise PreconditionFailed(f"Task {task_id} has active tasks: {active}")
            for t in subtree:
                self._forget(t)

    def discard_application(self, application_id: str) -> int:
        """Forget every task of an application. Returns the number removed."""
        with self._cond:
            ids = [t for t, r in self._records.items() if r.application_id == application_id]
            for t in ids:
                self._forget(t)
            return len(ids)

    def restore(self, record: TaskRecord) -> None:
        """Re-insert a persisted (terminal) record."""
        with self._cond:
            self._records[record.task_id] = record
            token = CancellationToken()
            self._tokens[record.task_id] = token
            self._children.setdefault(record.task_id, [])
            if record.parent_id in self._children:
                self._children[record.parent_id].append(record.task_id)

    def add_listener(self, listener: Callable[[TaskRecord], None]) -> None:
        """Register a callback run after every task completion."""
        with self._cond:
            self._listeners.append(listener)

    def run_inline(
        self,
        entity_id: str,
        name: str,
        body: Callable[[CancellationToken], Any],
        application_id: Optional[str] = None,
        args: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Run ``body`` on the calling thread as a child of the current task.

        The nested task is recorded like any other so the task tree mirrors
        nested lifecycle work; errors are recorded and re-raised.
        """
        record = self.create(
            entity_id,
            name,
            application_id=application_id,
            parent_id=self.current_task_id(),
            args=args,
        )
        token = self.token(record.task_id)
        self.mark_running(record.task_id)
        try:
            with self.bind(record.task_id):
                result = body(token)
        except BaseException as e:
            self.complete(record.task_id, error=e)
            raise
        self.complete(record.task_id, result=result)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _subtree(self, task_id: str) -> list[str]:
        if task_id not in self._records:
            raise NotFound(f"Unknown task: {task_id}")
        result = []
        pending = [task_id]
        while pending:
            current = pending.pop()
            if current in self._records:
                result.append(current)
                pending.extend(self._children.get(current, []))
        return result

    def _forget(self, task_id: str) -> None:
        record = self._records.pop(task_id, None)
        self._tokens.pop(task_id, None)
        self._children.pop(task_id, None)
        if record is not None and record.parent_id in self._children:
            siblings = self._children[record.parent_id]
            if task_id in siblings:
                siblings.remove(task_id)
