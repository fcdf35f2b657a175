"""
Location schema - where an entity may run.

Locations are persistent records shared by reference across applications.
The provider tag selects the MachineProvider; ``config`` is opaque to
everything except that provider.
"""

from dataclasses import dataclass, field
from typing import Any

from apporchestra.errors import BadArgument


@dataclass(frozen=True)
class Location:
    """
    A location record.

    Attributes:
        location_id: Unique identifier (e.g. "loc-local")
        name: Display name
        provider: Provider tag ("localhost", "byon", ...)
        config: Provider-specific configuration
    """
    location_id: str
    name: str
    provider: str
    config: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        return {
            "id": self.location_id,
            "name": self.name,
            "provider": self.provider,
            "config": dict(self.config),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Location":
        """
        Deserialize from dictionary.

        Raises:
            BadArgument: If id or provider is missing
        """
        location_id = data.get("id")
        provider = data.get("provider")
        if not location_id or not provider:
            raise BadArgument(f"Location requires 'id' and 'provider': {data}")
        return cls(
            location_id=location_id,
            name=data.get("name", location_id),
            provider=provider,
            config=dict(data.get("config") or {}),
        )
