"""
Task schema - a record of an asynchronous operation.

A TaskRecord is created for every effector invocation and for every nested
lifecycle step run on behalf of one. Records reference their parent by id;
the TaskRegistry keeps the reverse (children) index.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from apporchestra.utils import utcnow


class TaskState(str, Enum):
    """Status of a task."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_done(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELLED)


@dataclass
class TaskRecord:
    """
    A record of an asynchronous operation.

    Attributes:
        task_id: ULID uniquely identifying the task
        entity_id: The entity that owns the task
        name: Effector name or lifecycle phase
        application_id: Application the owning entity belongs to
        parent_id: Parent task id for nested invocations
        state: Current TaskState
        args: Arguments the task was invoked with
        submitted_at: When the task was created
        started_at: When the body started running
        completed_at: When the task reached a terminal state
        result: JSON-safe result of a successful body
        error: Error details if FAILED or CANCELLED
    """
    task_id: str
    entity_id: str
    name: str
    application_id: Optional[str] = None
    parent_id: Optional[str] = None
    state: TaskState = TaskState.QUEUED
    args: dict[str, Any] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[dict[str, Any]] = None

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "task_id": self.task_id,
            "entity_id": self.entity_id,
            "name": self.name,
            "state": self.state.value,
            "args": self.args,
            "submitted_at": self.submitted_at.isoformat(),
        }
        if self.application_id is not None:
            result["application_id"] = self.application_id
        if self.parent_id is not None:
            result["parent_id"] = self.parent_id
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.result is not None:
            result["result"] = self.result
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRecord":
        """Deserialize from dictionary."""
        return cls(
            task_id=data["task_id"],
            entity_id=data["entity_id"],
            name=data["name"],
            application_id=data.get("application_id"),
            parent_id=data.get("parent_id"),
            state=TaskState(data.get("state", "QUEUED")),
            args=data.get("args", {}),
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
            result=data.get("result"),
            error=data.get("error"),
        )
