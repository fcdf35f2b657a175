"""
Remote executors - run scripts on a machine handle.

ShellExecutor feeds the rendered script to ``bash -s`` on the target:
locally for "local" handles, through the system ssh client otherwise.
Execution is synchronous for the caller but interruptible: a cancelled
token terminates the in-flight process and raises Cancelled.
"""

import base64
import logging
import os
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Optional

from apporchestra.errors import (
    Cancelled,
    PhaseTimeout,
    ProviderError,
    ScriptFailed,
    TransientError,
)
from apporchestra.remote.script import Script, ScriptOptions, ScriptResult

if TYPE_CHECKING:
    from apporchestra.machines.base import MachineHandle

logger = logging.getLogger(__name__)

# ssh reserves exit status 255 for its own (connection) failures
SSH_CONNECTION_FAILED = 255


def transport_command(handle: "MachineHandle") -> list[str]:
    """
    Command prefix that runs one shell command string on the handle's host.

    Append a single command string to the returned list.
    """
    if handle.transport == "local":
        return ["bash", "-c"]
    command = [
        "ssh",
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=accept-new",
        "-o", "ConnectTimeout=30",
    ]
    if handle.port:
        command += ["-p", str(handle.port)]
    key_file = handle.credentials.get("private_key_file")
    if key_file:
        command += ["-i", os.path.expanduser(key_file)]
    target = f"{handle.user}@{handle.hostname}" if handle.user else handle.hostname
    return command + [target]


class RemoteExecutor(ABC):
    """
    Abstract base class for remote executors.

    Subclasses run a rendered Script on a machine and report exit status,
    stdout and stderr. They do not interpret stdout.
    """

    @abstractmethod
    def execute(
        self,
        handle: "MachineHandle",
        script: Script,
        token: Any = None,
    ) -> ScriptResult:
        """
        Run a script on the machine.

        Args:
            handle: Machine to run on
            script: Script to run
            token: Cancellation token; cancelling aborts the run

        Returns:
            ScriptResult with exit code, stdout and stderr

        Raises:
            ScriptFailed: On non-zero exit when fail_on_non_zero is set
            TransientError: If the machine could not be reached
            Cancelled: If the token was cancelled mid-run
            PhaseTimeout: If the script's timeout elapsed
        """
        pass

    def write_file(
        self,
        handle: "MachineHandle",
        path: str,
        content: bytes,
        token: Any = None,
    ) -> None:
        """Write ``content`` to ``path`` on the machine, creating parent directories."""
        encoded = base64.b64encode(content).decode("ascii")
        parent = str(PurePosixPath(path).parent)
        script = Script(
            f"write {path}",
            [f"printf '%s' {shlex.quote(encoded)} | base64 -d > {shlex.quote(path)}"],
            ScriptOptions(directories=(parent,)),
        )
        self.execute(handle, script, token)


class ShellExecutor(RemoteExecutor):
    """
    Executor running scripts through local bash or the ssh client.

    Args:
        poll_interval: Seconds between cancellation checks while a script runs
        kill_grace: Seconds to wait after SIGTERM before SIGKILL on abort
    """

    def __init__(self, poll_interval: float = 0.2, kill_grace: float = 5.0):
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def execute(
        self,
        handle: "MachineHandle",
        script: Script,
        token: Any = None,
    ) -> ScriptResult:
        if token is not None:
            token.raise_if_cancelled()

        command = transport_command(handle) + ["bash -s"]
        logger.debug(f"Running script '{script.name}' on {handle.hostname}:\n{script.render()}")

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as e:
            raise ProviderError(f"Cannot run '{command[0]}' for {handle.hostname}: {e}")

        deadline = time.monotonic() + script.options.timeout if script.options.timeout else None
        pending_input: Optional[str] = script.render()
        while True:
            try:
                stdout, stderr = process.communicate(input=pending_input, timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                if token is not None and token.is_cancelled:
                    self._abort(process)
                    logger.warning(f"Script '{script.name}' on {handle.hostname} cancelled")
                    raise Cancelled(token.reason or "Cancelled")
                if deadline is not None and time.monotonic() > deadline:
                    self._abort(process)
                    raise PhaseTimeout(script.name, script.options.timeout)

        result = ScriptResult(exit_code=process.returncode, stdout=stdout or "", stderr=stderr or "")
        logger.info(f"Script '{script.name}' on {handle.hostname} exited {result.exit_code}")

        if handle.transport == "ssh" and result.exit_code == SSH_CONNECTION_FAILED:
            raise TransientError(
                f"ssh to {handle.hostname} failed: {result.stderr.strip()[:500]}"
            )
        if script.options.fail_on_non_zero and not result.ok:
            raise ScriptFailed(script.name, result.exit_code, result.stdout, result.stderr)
        return result

    def _abort(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
