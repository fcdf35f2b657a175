"""
apporchestra - Application lifecycle orchestrator

Builds entity trees from declarative plans and drives each component
through provisioning, install, customize, launch, supervision and teardown.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = [
    "ApporchestraConfig",
    "load_config",
    "get_apporchestra_home",
    "ApplicationManager",
    "EntityTypeRegistry",
    "LocationStore",
]

from .config import ApporchestraConfig, load_config, get_apporchestra_home
from .catalog import EntityTypeRegistry
from .locations import LocationStore
from .manager import ApplicationManager
