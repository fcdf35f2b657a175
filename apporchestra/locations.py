"""
Location store - persistent, read-mostly registry of locations.

Locations are loaded from a YAML file:

    locations:
      - id: loc-local
        name: This host
        provider: localhost
      - id: lab
        provider: byon
        config:
          user: deploy
          hosts: [10.0.0.5, 10.0.0.6]

A bare list of location mappings is accepted as well.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

import yaml

from apporchestra.config import ConfigError
from apporchestra.errors import BadArgument, NotFound
from apporchestra.schemas import Location

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = Location(location_id="loc-local", name="localhost", provider="localhost")


class LocationStore:
    """Thread-safe location registry keyed by id."""

    def __init__(self, locations: Optional[list[Location]] = None):
        self._lock = threading.Lock()
        self._locations: dict[str, Location] = {}
        for location in locations or []:
            self.add(location)

    def add(self, location: Location) -> None:
        """
        Add a location.

        Raises:
            BadArgument: If a location with the same id exists
        """
        with self._lock:
            if location.location_id in self._locations:
                raise BadArgument(f"Duplicate location id: {location.location_id}")
            self._locations[location.location_id] = location

    def get(self, location_id: str) -> Location:
        """
        Get a location by id.

        Raises:
            NotFound: If the location is unknown
        """
        with self._lock:
            location = self._locations.get(location_id)
        if location is None:
            raise NotFound(f"Unknown location: {location_id}")
        return location

    def list(self) -> list[Location]:
        with self._lock:
            return sorted(self._locations.values(), key=lambda loc: loc.location_id)

    def to_dict(self) -> dict:
        return {"locations": [loc.to_dict() for loc in self.list()]}

    def save(self, path: Path) -> None:
        """Write the store as YAML."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)

    @classmethod
    def load(cls, path: Path, include_default: bool = True) -> "LocationStore":
        """
        Load locations from YAML.

        Args:
            path: Locations file; a missing file yields an empty store
            include_default: Add the "loc-local" localhost location if absent

        Raises:
            ConfigError: If the file is not valid YAML or has the wrong shape
        """
        entries: list = []
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}")
            if isinstance(data, dict):
                data = data.get("locations")
            if data is None:
                data = []
            if not isinstance(data, list):
                raise ConfigError(f"{path}: expected a list of locations")
            entries = data
        else:
            logger.debug(f"No locations file at {path}")

        store = cls()
        for entry in entries:
            if not isinstance(entry, dict):
                raise ConfigError(f"{path}: location entries must be mappings, got {entry!r}")
            try:
                store.add(Location.from_dict(entry))
            except BadArgument as e:
                raise ConfigError(f"{path}: {e}")

        if include_default:
            with store._lock:
                store._locations.setdefault(DEFAULT_LOCATION.location_id, DEFAULT_LOCATION)
        return store
