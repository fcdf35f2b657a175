"""
StateStore - persist application state across orchestrator restarts.

Per application the store keeps:
- Entity tree snapshot (id, type, config, parent, children, state, machine)
- Durable sensor values (only sensors declared persistent)
- Task history (bounded ring, newest last)

Storage backends:
- In-memory (for testing)
- File-based: one directory per application

    state_dir/
        applications/
            {app_id}/
                entities.json
                sensors.json
                tasks.json
"""

import copy
import json
import os
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional


class StateStore(ABC):
    """
    Abstract base class for application state storage.

    Implementations must be safe to call from several worker threads.
    """

    @abstractmethod
    def save_entities(self, app_id: str, entities: list[dict[str, Any]]) -> None:
        """
        Replace the entity tree snapshot of an application.

        Args:
            app_id: Application id
            entities: Entity.to_dict() snapshots, parents before children
        """
        pass

    @abstractmethod
    def load_entities(self, app_id: str) -> Optional[list[dict[str, Any]]]:
        """Get the entity snapshot, or None if the application is unknown."""
        pass

    @abstractmethod
    def save_sensors(self, app_id: str, sensors: dict[str, dict[str, Any]]) -> None:
        """Replace durable sensor values, as {entity_id: {key: {value, version}}}."""
        pass

    @abstractmethod
    def load_sensors(self, app_id: str) -> dict[str, dict[str, Any]]:
        pass

    @abstractmethod
    def record_task(self, app_id: str, task: dict[str, Any], history_size: int) -> None:
        """
        Insert or update a task in the application's history ring.

        The oldest entries are dropped beyond ``history_size``.
        """
        pass

    @abstractmethod
    def load_tasks(self, app_id: str) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    def list_applications(self) -> list[str]:
        pass

    @abstractmethod
    def delete_application(self, app_id: str) -> None:
        pass


def _ring_update(history: list[dict[str, Any]], task: dict[str, Any], size: int) -> list[dict[str, Any]]:
    history = [t for t in history if t.get("task_id") != task.get("task_id")]
    history.append(task)
    return history[-size:]


class InMemoryStateStore(StateStore):
    """In-memory implementation of StateStore for testing."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entities: dict[str, list[dict[str, Any]]] = {}
        self._sensors: dict[str, dict[str, dict[str, Any]]] = {}
        self._tasks: dict[str, list[dict[str, Any]]] = {}

    def save_entities(self, app_id: str, entities: list[dict[str, Any]]) -> None:
        with self._lock:
            self._entities[app_id] = copy.deepcopy(entities)

    def load_entities(self, app_id: str) -> Optional[list[dict[str, Any]]]:
        with self._lock:
            entities = self._entities.get(app_id)
            return copy.deepcopy(entities) if entities is not None else None

    def save_sensors(self, app_id: str, sensors: dict[str, dict[str, Any]]) -> None:
        with self._lock:
            self._sensors[app_id] = copy.deepcopy(sensors)

    def load_sensors(self, app_id: str) -> dict[str, dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._sensors.get(app_id, {}))

    def record_task(self, app_id: str, task: dict[str, Any], history_size: int) -> None:
        with self._lock:
            self._tasks[app_id] = _ring_update(self._tasks.get(app_id, []), copy.deepcopy(task), history_size)

    def load_tasks(self, app_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._tasks.get(app_id, []))

    def list_applications(self) -> list[str]:
        with self._lock:
            return sorted(self._entities)

    def delete_application(self, app_id: str) -> None:
        with self._lock:
            self._entities.pop(app_id, None)
            self._sensors.pop(app_id, None)
            self._tasks.pop(app_id, None)


class FileStateStore(StateStore):
    """
    File-based implementation of StateStore.

    Files are rewritten atomically (write to a temp file, then rename).
    """

    def __init__(self, state_dir: Path | str):
        self._root = Path(state_dir) / "applications"
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _app_dir(self, app_id: str) -> Path:
        return self._root / app_id

    def _write(self, app_id: str, name: str, data: Any) -> None:
        app_dir = self._app_dir(app_id)
        app_dir.mkdir(parents=True, exist_ok=True)
        path = app_dir / name
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, path)

    def _read(self, app_id: str, name: str) -> Optional[Any]:
        path = self._app_dir(app_id) / name
        if not path.exists():
            return None
        with open(path) as f:
            return json.load(f)

    def save_entities(self, app_id: str, entities: list[dict[str, Any]]) -> None:
        with self._lock:
            self._write(app_id, "entities.json", entities)

    def load_entities(self, app_id: str) -> Optional[list[dict[str, Any]]]:
        with self._lock:
            return self._read(app_id, "entities.json")

    def save_sensors(self, app_id: str, sensors: dict[str, dict[str, Any]]) -> None:
        with self._lock:
            self._write(app_id, "sensors.json", sensors)

    def load_sensors(self, app_id: str) -> dict[str, dict[str, Any]]:
        with self._lock:
            return self._read(app_id, "sensors.json") or {}

    def record_task(self, app_id: str, task: dict[str, Any], history_size: int) -> None:
        with self._lock:
            history = self._read(app_id, "tasks.json") or []
            self._write(app_id, "tasks.json", _ring_update(history, task, history_size))

    def load_tasks(self, app_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return self._read(app_id, "tasks.json") or []

    def list_applications(self) -> list[str]:
        with self._lock:
            return sorted(
                p.name for p in self._root.iterdir()
                if p.is_dir() and (p / "entities.json").exists()
            )

    def delete_application(self, app_id: str) -> None:
        with self._lock:
            app_dir = self._app_dir(app_id)
            if app_dir.exists():
                shutil.rmtree(app_dir)
