"""
Machine provider protocol and machine handles.

A MachineProvider hands out MachineHandles for a Location. A handle is an
exclusively-owned capability granting remote execution on one host; it
must be released exactly once. Providers may block in obtain() and must
observe the cancellation token while they do.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from apporchestra.errors import InternalInvariant
from apporchestra.schemas import Location

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MachineDetails:
    """What describe() reports about a machine."""
    os_tag: str
    architecture: str
    addresses: tuple[str, ...] = ()

    @property
    def is_64bit(self) -> bool:
        return self.architecture in ("x86_64", "amd64", "aarch64", "arm64")

    def to_dict(self) -> dict[str, Any]:
        return {
            "os": self.os_tag,
            "architecture": self.architecture,
            "addresses": list(self.addresses),
        }


@dataclass
class MachineHandle:
    """
    Capability for running commands on one host.

    Attributes:
        handle_id: Unique id of this allocation
        location_id: Location the machine came from
        hostname: Host name or address used to reach the machine
        transport: "local" (run through local bash) or "ssh"
        user: Remote user for ssh transport
        port: Remote port for ssh transport
        credentials: Provider-opaque credential material (e.g. private key path)
        details: Cached describe() result
    """
    handle_id: str
    location_id: str
    hostname: str
    transport: str = "local"
    user: Optional[str] = None
    port: Optional[int] = None
    credentials: dict[str, Any] = field(default_factory=dict, repr=False)
    details: Optional[MachineDetails] = None
    released: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize without credentials."""
        return {
            "handle_id": self.handle_id,
            "location_id": self.location_id,
            "hostname": self.hostname,
            "transport": self.transport,
            "user": self.user,
            "port": self.port,
            "details": self.details.to_dict() if self.details else None,
        }


class MachineProvider(ABC):
    """
    Abstract base class for machine providers.

    Subclasses implement _obtain and _release; release() enforces the
    exactly-once contract for every provider.
    """

    tag = "abstract"

    def __init__(self) -> None:
        self._release_lock = threading.Lock()

    @abstractmethod
    def obtain(
        self,
        location: Location,
        constraints: Optional[dict[str, Any]] = None,
        token: Any = None,
    ) -> MachineHandle:
        """
        Allocate a machine in ``location``.

        Args:
            location: Location record to allocate from
            constraints: Optional provider-specific constraints
            token: Cancellation token to observe while blocking

        Returns:
            A fresh MachineHandle

        Raises:
            NoMachineAvailable: If the location has no free machine
            ProviderError: If provisioning failed
            TransientProviderError: If provisioning may succeed on retry
            Cancelled: If the token was cancelled while waiting
        """
        pass

    def release(self, handle: MachineHandle) -> None:
        """
        Return a machine to the provider.

        Raises:
            InternalInvariant: If the handle was already released
        """
        with self._release_lock:
            if handle.released:
                raise InternalInvariant(
                    f"Machine handle {handle.handle_id} ({handle.hostname}) released twice"
                )
            handle.released = True
        logger.info(f"Releasing machine {handle.hostname} ({handle.handle_id})")
        self._release(handle)

    @abstractmethod
    def _release(self, handle: MachineHandle) -> None:
        pass

    @abstractmethod
    def describe(self, handle: MachineHandle) -> MachineDetails:
        """Report OS tag, architecture tag, and reachable addresses."""
        pass

    def rehydrate(self, location: Location, data: dict[str, Any]) -> MachineHandle:
        """
        Re-attach a handle persisted with MachineHandle.to_dict().

        Providers that track allocations override this to re-mark the host
        as in use.
        """
        return MachineHandle(
            handle_id=data["handle_id"],
            location_id=location.location_id,
            hostname=data["hostname"],
            transport=data.get("transport", "local"),
            user=data.get("user"),
            port=data.get("port"),
        )
