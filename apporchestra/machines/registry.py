"""
Provider registry for dispatching locations to machine providers.

Maps provider tags ("localhost", "byon", ...) to factories. One provider
instance is created per location and reused, so pooled providers track
their allocations across entities.
"""

import threading
from typing import Callable

from apporchestra.errors import ProviderError
from apporchestra.machines.base import MachineProvider
from apporchestra.machines.byon import ByonProvider
from apporchestra.machines.localhost import LocalhostProvider
from apporchestra.schemas import Location

ProviderFactory = Callable[[Location], MachineProvider]


class ProviderRegistry:
    """
    Registry of machine provider factories by provider tag.

    Usage:
        registry = ProviderRegistry.create_default()
        provider = registry.for_location(location)
        handle = provider.obtain(location)
    """

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        self._instances: dict[str, MachineProvider] = {}
        self._lock = threading.Lock()

    def register(self, tag: str, factory: ProviderFactory) -> None:
        """
        Register a provider factory.

        Args:
            tag: Provider tag used in location records
            factory: Callable building a provider for a location
        """
        self._factories[tag] = factory

    def has(self, tag: str) -> bool:
        return tag in self._factories

    def list_tags(self) -> list[str]:
        return sorted(self._factories)

    def for_location(self, location: Location) -> MachineProvider:
        """
        Get the provider instance serving a location.

        Raises:
            ProviderError: If no provider is registered for the location's tag
        """
        with self._lock:
            provider = self._instances.get(location.location_id)
            if provider is not None:
                return provider
            if location.provider not in self._factories:
                raise ProviderError(
                    f"No provider registered for tag '{location.provider}' "
                    f"(location {location.location_id}). Registered: {self.list_tags()}"
                )
            provider = self._factories[location.provider](location)
            self._instances[location.location_id] = provider
            return provider

    @classmethod
    def create_default(cls) -> "ProviderRegistry":
        """Create a registry with the built-in localhost and byon providers."""
        registry = cls()
        registry.register(LocalhostProvider.tag, lambda location: LocalhostProvider())
        registry.register(ByonProvider.tag, ByonProvider)
        return registry
