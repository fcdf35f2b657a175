"""
Script model for remote execution.

A Script is an ordered list of shell commands plus options. The executor
wraps the commands in a header (strict mode, environment exports, directory
creation, install-marker check) and a footer (marker write, pid-file
liveness check) when rendering.
"""

import shlex
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Optional


@dataclass
class ScriptOptions:
    """
    Options controlling how a script runs.

    Attributes:
        fail_on_non_zero: Raise ScriptFailed on a non-zero exit (and run under ``set -e``)
        use_pid_file: Pid file path; appends a "process alive" check
        env: Environment variables exported before the commands
        directories: Directories created before the commands
        install_marker: Marker file; when present the script exits 0 without
            running its commands, and it is written after they succeed
        timeout: Seconds before the run is aborted (None = unbounded)
    """
    fail_on_non_zero: bool = True
    use_pid_file: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    directories: tuple[str, ...] = ()
    install_marker: Optional[str] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class ScriptResult:
    """Outcome of one script execution."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Script:
    """
    A named, ordered sequence of shell commands.

    Usage:
        script = Script("install", options=ScriptOptions(install_marker=marker))
        script.body("curl -fsSL -o app.tgz URL", "tar xzf app.tgz")
        executor.execute(handle, script, token)
    """

    def __init__(
        self,
        name: str,
        commands: Optional[list[str]] = None,
        options: Optional[ScriptOptions] = None,
    ):
        self.name = name
        self.commands: list[str] = list(commands or [])
        self.options = options or ScriptOptions()

    def body(self, *commands: str) -> "Script":
        """Append commands; returns self for chaining."""
        self.commands.extend(commands)
        return self

    def header(self) -> list[str]:
        lines = ["#!/usr/bin/env bash"]
        if self.options.fail_on_non_zero:
            lines.append("set -e")
        for key, value in sorted(self.options.env.items()):
            lines.append(f"export {key}={shlex.quote(str(value))}")
        for directory in self.options.directories:
            lines.append(f"mkdir -p {shlex.quote(directory)}")
        marker = self.options.install_marker
        if marker:
            quoted = shlex.quote(marker)
            lines.append(f"if [ -f {quoted} ]; then echo 'already installed: {self.name}'; exit 0; fi")
        return lines

    def footer(self) -> list[str]:
        lines = []
        marker = self.options.install_marker
        if marker:
            parent = str(PurePosixPath(marker).parent)
            lines.append(f"mkdir -p {shlex.quote(parent)}")
            lines.append(f"touch {shlex.quote(marker)}")
        pid_file = self.options.use_pid_file
        if pid_file:
            quoted = shlex.quote(pid_file)
            lines.append(f"test -f {quoted} || exit 1")
            lines.append(f"kill -0 \"$(cat {quoted})\" 2>/dev/null || exit 1")
        return lines

    def render(self) -> str:
        """Render the full script text fed to the remote shell."""
        return "\n".join(self.header() + self.commands + self.footer()) + "\n"

    def __repr__(self) -> str:
        return f"Script(name={self.name!r}, commands={len(self.commands)})"
