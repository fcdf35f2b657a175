"""
apporchestra.drivers - Driver contract and built-in drivers.
"""

from .base import Driver, DriverContext
from .noop import NoopDriver
from .process import VanillaProcessDriver
from .script_driver import ScriptDriver, download_commands, validate_port_numbers

__all__ = [
    "Driver",
    "DriverContext",
    "NoopDriver",
    "ScriptDriver",
    "VanillaProcessDriver",
    "download_commands",
    "validate_port_numbers",
]
