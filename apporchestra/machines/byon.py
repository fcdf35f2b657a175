"""
Bring-your-own-node provider - a fixed list of hosts reached over ssh.

Location config:

    provider: byon
    config:
      user: deploy                    # default ssh user
      private_key_file: ~/.ssh/id_ed25519
      hosts:
        - 10.0.0.5
        - deploy@10.0.0.6:2222
        - {host: 10.0.0.7, user: ops, os: linux, architecture: x86_64}

Each host is handed out to one entity at a time. Hosts named "localhost"
use the local transport instead of ssh.
"""

import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Any, Optional

from apporchestra.errors import (
    BadArgument,
    NoMachineAvailable,
    TransientProviderError,
)
from apporchestra.machines.base import MachineDetails, MachineHandle, MachineProvider
from apporchestra.remote.executor import transport_command
from apporchestra.schemas import Location
from apporchestra.utils import generate_ulid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostSpec:
    """One entry of a byon host list."""
    host: str
    user: Optional[str] = None
    port: Optional[int] = None
    private_key_file: Optional[str] = None
    os_tag: Optional[str] = None
    architecture: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}" if self.port else self.host


def parse_host(entry: Any, defaults: dict[str, Any]) -> HostSpec:
    """
    Parse "host", "user@host", "user@host:port", or a mapping.

    Raises:
        BadArgument: If the entry is malformed
    """
    if isinstance(entry, dict):
        if not entry.get("host"):
            raise BadArgument(f"byon host entry missing 'host': {entry}")
        return HostSpec(
            host=entry["host"],
            user=entry.get("user", defaults.get("user")),
            port=entry.get("port", defaults.get("port")),
            private_key_file=entry.get("private_key_file", defaults.get("private_key_file")),
            os_tag=entry.get("os"),
            architecture=entry.get("architecture"),
        )
    if not isinstance(entry, str) or not entry:
        raise BadArgument(f"Invalid byon host entry: {entry!r}")

    user = defaults.get("user")
    port = defaults.get("port")
    host = entry
    if "@" in host:
        user, host = host.split("@", 1)
    if ":" in host:
        host, port_text = host.rsplit(":", 1)
        try:
            port = int(port_text)
        except ValueError:
            raise BadArgument(f"Invalid port in byon host entry: {entry!r}")
    return HostSpec(
        host=host,
        user=user,
        port=port,
        private_key_file=defaults.get("private_key_file"),
    )


class ByonProvider(MachineProvider):
    """Provider for the "byon" location type."""

    tag = "byon"

    def __init__(self, location: Location):
        super().__init__()
        config = location.config
        hosts = config.get("hosts") or []
        if not isinstance(hosts, list):
            raise BadArgument(f"Location {location.location_id}: 'hosts' must be a list")
        self.location_id = location.location_id
        self.hosts = [parse_host(h, config) for h in hosts]
        self._lock = threading.Lock()
        self._in_use: dict[str, str] = {}  # address -> handle_id

    def obtain(
        self,
        location: Location,
        constraints: Optional[dict[str, Any]] = None,
        token: Any = None,
    ) -> MachineHandle:
        if token is not None:
            token.raise_if_cancelled()
        with self._lock:
            free = [h for h in self.hosts if h.address not in self._in_use]
            if not free:
                raise NoMachineAvailable(
                    f"No free host in location {location.location_id} "
                    f"({len(self.hosts)} configured, all in use)"
                )
            spec = free[0]
            handle = self._handle_for(spec, generate_ulid())
            self._in_use[spec.address] = handle.handle_id

        logger.info(f"Obtained byon host {spec.address} ({handle.handle_id})")
        return handle

    def _handle_for(self, spec: HostSpec, handle_id: str) -> MachineHandle:
        credentials = {}
        if spec.private_key_file:
            credentials["private_key_file"] = spec.private_key_file
        handle = MachineHandle(
            handle_id=handle_id,
            location_id=self.location_id,
            hostname=spec.host,
            transport="local" if spec.host in ("localhost", "127.0.0.1") else "ssh",
            user=spec.user,
            port=spec.port,
            credentials=credentials,
        )
        if spec.os_tag and spec.architecture:
            handle.details = MachineDetails(spec.os_tag, spec.architecture, (spec.host,))
        return handle

    def _release(self, handle: MachineHandle) -> None:
        address = f"{handle.hostname}:{handle.port}" if handle.port else handle.hostname
        with self._lock:
            self._in_use.pop(address, None)

    def describe(self, handle: MachineHandle) -> MachineDetails:
        """Probe the host with ``uname`` unless the details are configured."""
        if handle.details is not None:
            return handle.details
        command = transport_command(handle) + ["uname -s; uname -m"]
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise TransientProviderError(f"Cannot reach {handle.hostname}: {e}")
        if result.returncode != 0:
            raise TransientProviderError(
                f"Probe of {handle.hostname} failed ({result.returncode}): {result.stderr.strip()}"
            )
        lines = result.stdout.split()
        system = lines[0].lower() if lines else "unknown"
        handle.details = MachineDetails(
            os_tag="osx" if system == "darwin" else system,
            architecture=lines[1].lower() if len(lines) > 1 else "unknown",
            addresses=(handle.hostname,),
        )
        return handle.details

    def rehydrate(self, location: Location, data: dict[str, Any]) -> MachineHandle:
        """Re-attach a persisted allocation, marking its host in use."""
        with self._lock:
            for spec in self.hosts:
                if spec.host == data["hostname"] and spec.port == data.get("port"):
                    self._in_use[spec.address] = data["handle_id"]
                    return self._handle_for(spec, data["handle_id"])
        return super().rehydrate(location, data)
