"""
apporchestra.machines - Machine providers and handles.

Providers:
- localhost: commands run on the orchestrator host
- byon: a fixed list of hosts reached over ssh
"""

from .base import MachineDetails, MachineHandle, MachineProvider
from .byon import ByonProvider, HostSpec, parse_host
from .localhost import LocalhostProvider
from .registry import ProviderRegistry

__all__ = [
    "MachineDetails",
    "MachineHandle",
    "MachineProvider",
    "ByonProvider",
    "HostSpec",
    "parse_host",
    "LocalhostProvider",
    "ProviderRegistry",
]
