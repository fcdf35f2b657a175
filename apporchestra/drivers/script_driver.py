"""
Script-driven software process driver.

Lays out canonical directories on the target machine and implements the
driver phases as shell scripts run through the remote executor:

  install dir   {base_dir}/installs/{type}_{version}
  run dir       {base_dir}/apps/{app}/entities/{type}_{entity}
  pid file      {run_dir}/pid
  log file      {run_dir}/console.log
  marker        {install_dir}/INSTALL_COMPLETE

Subclasses supply install_commands, customize_commands and launch_command;
everything else (marker handling, port checks, templates, pid liveness,
signal-based stop) is shared.
"""

import logging
import shlex
from pathlib import PurePosixPath
from typing import Any

from apporchestra.drivers.base import Driver, DriverContext
from apporchestra.errors import BadArgument
from apporchestra.remote import Script, ScriptOptions

logger = logging.getLogger(__name__)

STOP_SIGNALS = {"SIGTERM": 15, "SIGINT": 2, "SIGQUIT": 3, "SIGHUP": 1, "SIGKILL": 9}

MAX_PORT = 65535


def download_commands(urls: list[str], save_as: str) -> list[str]:
    """
    Commands that fetch the first reachable URL to ``save_as``.

    Uses curl when present and falls back to wget.
    """
    if not urls:
        raise BadArgument("No download URL configured")
    target = shlex.quote(save_as)
    attempts = []
    for url in urls:
        quoted = shlex.quote(url)
        attempts.append(
            f"( command -v curl >/dev/null && curl -fsSL -o {target} {quoted} ) || "
            f"( command -v wget >/dev/null && wget -q -O {target} {quoted} )"
        )
    return [" || ".join(attempts)]


def validate_port_numbers(ports: Any) -> list[int]:
    """
    Check declared ports are integers in 1..65535.

    Raises:
        BadArgument: On an invalid port
    """
    if ports is None:
        return []
    if not isinstance(ports, (list, tuple)):
        ports = [ports]
    result = []
    for port in ports:
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= MAX_PORT:
            raise BadArgument(f"Invalid port: {port!r} (must be an integer in 1..{MAX_PORT})")
        result.append(port)
    return result


class ScriptDriver(Driver):
    """Base class for drivers that install and run a process via shell scripts."""

    marker_name = "INSTALL_COMPLETE"
    default_stop_signal = "SIGTERM"
    stop_grace_seconds = 30

    # ------------------------------------------------------------------
    # Canonical paths
    # ------------------------------------------------------------------

    def version(self, ctx: DriverContext) -> str:
        return str(ctx.config.get("version") or "latest")

    def install_dir(self, ctx: DriverContext) -> str:
        return f"{ctx.base_dir}/installs/{ctx.type_tag}_{self.version(ctx)}"

    def run_dir(self, ctx: DriverContext) -> str:
        return f"{ctx.base_dir}/apps/{ctx.application_id}/entities/{ctx.type_tag}_{ctx.entity_id}"

    def pid_file(self, ctx: DriverContext) -> str:
        return f"{self.run_dir(ctx)}/pid"

    def log_file(self, ctx: DriverContext) -> str:
        return f"{self.run_dir(ctx)}/console.log"

    def install_marker(self, ctx: DriverContext) -> str:
        return f"{self.install_dir(ctx)}/{self.marker_name}"

    # ------------------------------------------------------------------
    # Recipe hooks
    # ------------------------------------------------------------------

    def install_commands(self, ctx: DriverContext) -> list[str]:
        return []

    def customize_commands(self, ctx: DriverContext) -> list[str]:
        return []

    def launch_command(self, ctx: DriverContext) -> str:
        raise NotImplementedError(f"{type(self).__name__} does not define a launch command")

    def required_ports(self, ctx: DriverContext) -> list[int]:
        return validate_port_numbers(ctx.config.get("required_ports"))

    def template_context(self, ctx: DriverContext) -> dict[str, Any]:
        return {
            "entity": {
                "id": ctx.entity_id,
                "type": ctx.type_tag,
                "application": ctx.application_id,
            },
            "config": dict(ctx.config),
            "install_dir": self.install_dir(ctx),
            "run_dir": self.run_dir(ctx),
            "machine": ctx.machine.to_dict() if ctx.machine else {},
        }

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def install(self, ctx: DriverContext) -> None:
        install_dir = self.install_dir(ctx)
        script = Script(
            "install",
            [f"cd {shlex.quote(install_dir)}"] + self.install_commands(ctx),
            ScriptOptions(
                directories=(install_dir,),
                install_marker=self.install_marker(ctx),
                timeout=ctx.config.get("install_script_timeout"),
            ),
        )
        ctx.run(script)

    def customize(self, ctx: DriverContext) -> None:
        run_dir = self.run_dir(ctx)
        ports = self.required_ports(ctx)

        commands = [f"cd {shlex.quote(run_dir)}"]
        for port in ports:
            # bash /dev/tcp connects only if something already listens on the port
            commands.append(
                f"if (exec 3<>/dev/tcp/127.0.0.1/{port}) 2>/dev/null; then "
                f"echo 'port {port} is already in use' >&2; exit 1; fi"
            )
        commands += self.customize_commands(ctx)
        ctx.run(Script("customize", commands, ScriptOptions(directories=(run_dir,))))

        for filename, template_url in self.templates(ctx).items():
            content = ctx.renderer.render(template_url, self.template_context(ctx))
            ctx.executor.write_file(ctx.machine, f"{run_dir}/{filename}", content, ctx.token)
            logger.info(f"Rendered {template_url} to {run_dir}/{filename} for {ctx.entity_id}")

    def templates(self, ctx: DriverContext) -> dict[str, str]:
        """
        Templates to render into the run dir, as {filename: template_url}.

        Raises:
            BadArgument: If a destination escapes the run directory
        """
        templates = ctx.config.get("templates") or {}
        if not isinstance(templates, dict):
            raise BadArgument("Config 'templates' must map file names to template URLs")
        for filename in templates:
            path = PurePosixPath(filename)
            if path.is_absolute() or ".." in path.parts:
                raise BadArgument(f"Template destination must stay in the run dir: {filename}")
        return templates

    def launch(self, ctx: DriverContext) -> None:
        run_dir = self.run_dir(ctx)
        pid_file = shlex.quote(self.pid_file(ctx))
        log_file = shlex.quote(self.log_file(ctx))
        command = self.launch_command(ctx)
        script = Script(
            "launch",
            [
                f"cd {shlex.quote(run_dir)}",
                f"nohup {command} >> {log_file} 2>&1 < /dev/null &",
                f"echo $! > {pid_file}",
            ],
            ScriptOptions(
                directories=(run_dir,),
                env={"INSTALL_DIR": self.install_dir(ctx), "RUN_DIR": run_dir},
            ),
        )
        ctx.run(script)

    def is_running(self, ctx: DriverContext) -> bool:
        script = Script(
            "check-running",
            options=ScriptOptions(fail_on_non_zero=False, use_pid_file=self.pid_file(ctx)),
        )
        return ctx.run(script).exit_code == 0

    def stop_signal(self, ctx: DriverContext) -> str:
        """
        Signal used for graceful stop.

        Raises:
            BadArgument: On an unknown signal, or SIGKILL without stop_escalation
        """
        signal = str(ctx.config.get("stop_signal") or self.default_stop_signal).upper()
        if not signal.startswith("SIG"):
            signal = f"SIG{signal}"
        if signal not in STOP_SIGNALS:
            raise BadArgument(f"Unsupported stop signal: {signal}")
        if signal == "SIGKILL" and not ctx.config.get("stop_escalation"):
            raise BadArgument("SIGKILL requires stop_escalation to be enabled")
        return signal

    def stop(self, ctx: DriverContext) -> None:
        signal = self.stop_signal(ctx)
        pid_file = shlex.quote(self.pid_file(ctx))
        commands = [
            f"if [ ! -f {pid_file} ]; then echo 'no pid file'; exit 0; fi",
            f"PID=$(cat {pid_file})",
            f"kill -{STOP_SIGNALS[signal]} \"$PID\" 2>/dev/null || exit 0",
        ]
        if ctx.config.get("stop_escalation") and signal != "SIGKILL":
            grace = int(ctx.config.get("stop_grace_seconds") or self.stop_grace_seconds)
            commands += [
                f"for i in $(seq 1 {grace}); do kill -0 \"$PID\" 2>/dev/null || exit 0; sleep 1; done",
                "kill -9 \"$PID\" 2>/dev/null || true",
            ]
        ctx.run(Script("stop", commands))
