"""
Localhost provider - every handle runs commands on the orchestrator host.

The provider never runs out of machines; each obtain() returns a distinct
handle so release accounting still applies per allocation.
"""

import logging
import platform
import socket
from typing import Any, Optional

from apporchestra.machines.base import MachineDetails, MachineHandle, MachineProvider
from apporchestra.schemas import Location
from apporchestra.utils import generate_ulid

logger = logging.getLogger(__name__)


def local_os_tag() -> str:
    """Map platform.system() onto the os tags drivers switch on."""
    system = platform.system().lower()
    if system == "darwin":
        return "osx"
    return system or "unknown"


class LocalhostProvider(MachineProvider):
    """Provider for the "localhost" location type."""

    tag = "localhost"

    def __init__(self) -> None:
        super().__init__()
        self._details: Optional[MachineDetails] = None

    def obtain(
        self,
        location: Location,
        constraints: Optional[dict[str, Any]] = None,
        token: Any = None,
    ) -> MachineHandle:
        if token is not None:
            token.raise_if_cancelled()
        handle = MachineHandle(
            handle_id=generate_ulid(),
            location_id=location.location_id,
            hostname="localhost",
            transport="local",
        )
        handle.details = self.describe(handle)
        logger.info(f"Obtained localhost machine {handle.handle_id} for {location.location_id}")
        return handle

    def _release(self, handle: MachineHandle) -> None:
        # Nothing to return: the host is not pooled
        pass

    def describe(self, handle: MachineHandle) -> MachineDetails:
        if self._details is None:
            addresses = ["127.0.0.1"]
            try:
                address = socket.gethostbyname(socket.gethostname())
            except OSError:
                address = None
            if address and address not in addresses:
                addresses.append(address)
            self._details = MachineDetails(
                os_tag=local_os_tag(),
                architecture=platform.machine().lower() or "unknown",
                addresses=tuple(addresses),
            )
        return self._details
