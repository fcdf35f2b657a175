"""
No-op driver for testing and dry runs.

Every phase succeeds without touching the machine; is_running reports
whether launch has happened since the last stop.
"""

import logging

from apporchestra.drivers.base import Driver, DriverContext

logger = logging.getLogger(__name__)


class NoopDriver(Driver):
    """Driver that records phase calls and never executes anything."""

    def __init__(self) -> None:
        self.launched = False
        self.calls: list[str] = []

    def install(self, ctx: DriverContext) -> None:
        self.calls.append("install")

    def customize(self, ctx: DriverContext) -> None:
        self.calls.append("customize")

    def launch(self, ctx: DriverContext) -> None:
        self.calls.append("launch")
        self.launched = True
        logger.debug(f"noop launch for {ctx.entity_id}")

    def is_running(self, ctx: DriverContext) -> bool:
        return self.launched

    def stop(self, ctx: DriverContext) -> None:
        self.calls.append("stop")
        self.launched = False
