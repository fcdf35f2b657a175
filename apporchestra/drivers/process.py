"""
Vanilla process driver - a ScriptDriver configured entirely by entity config.

Config keys:
  download_url       archive URL(s); may use {{ os }}, {{ arch }}, {{ version }}
  install_command    extra shell run in the install dir after unpacking
  customize_command  shell run in the run dir during customize
  launch_command     process command line (required)
  stop_signal        SIGTERM (default), SIGINT, ...
  stop_escalation    allow SIGKILL after the stop grace period
"""

import shlex
from typing import Any

from apporchestra.drivers.base import DriverContext
from apporchestra.drivers.script_driver import ScriptDriver, download_commands
from apporchestra.errors import BadArgument


class VanillaProcessDriver(ScriptDriver):
    """Runs an arbitrary process described by config."""

    archive_name = "package.tgz"

    def _urls(self, ctx: DriverContext) -> list[str]:
        urls = ctx.config.get("download_url")
        if not urls:
            return []
        if isinstance(urls, str):
            urls = [urls]
        details = ctx.machine.details if ctx.machine else None
        variables: dict[str, Any] = {
            "os": details.os_tag if details else "linux",
            "arch": details.architecture if details else "x86_64",
            "version": self.version(ctx),
        }
        return [ctx.renderer.render_string(u, variables).decode("utf-8") for u in urls]

    def install_commands(self, ctx: DriverContext) -> list[str]:
        commands = []
        urls = self._urls(ctx)
        if urls:
            commands += download_commands(urls, self.archive_name)
            commands.append(f"tar xzf {self.archive_name}")
        extra = ctx.config.get("install_command")
        if extra:
            commands.append(extra)
        return commands

    def customize_commands(self, ctx: DriverContext) -> list[str]:
        command = ctx.config.get("customize_command")
        return [command] if command else []

    def launch_command(self, ctx: DriverContext) -> str:
        command = ctx.config.get("launch_command")
        if not command:
            raise BadArgument(f"Entity {ctx.entity_id} has no launch_command configured")
        return f"bash -c {shlex.quote(command)}"
