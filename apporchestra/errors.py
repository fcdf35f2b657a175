"""
Error classes for apporchestra.

These error types enable retry classification at phase boundaries:
- TransientError: Safe to retry (connection drops, provider hiccups)
- PermanentError: Do not retry (invalid input, failed scripts, bad state)

The lifecycle engine catches at the phase boundary for retry/backoff and
records the failure on the task and as the entity's ``error`` sensor.

Error handling contract:
- Errors are exceptions, not values
- Every error can render itself as a JSON-safe dict via to_dict()
- Nothing is silently swallowed; callers either propagate or record
"""

from typing import Any, Optional, Sequence


class ApporchestraError(Exception):
    """Base exception for apporchestra."""

    kind = "Error"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for task records and sensors."""
        return {"type": self.kind, "message": str(self)}


class TransientError(ApporchestraError):
    """
    Transient error - safe to retry.

    Examples:
    - SSH connection refused or reset
    - Provider API temporarily unavailable

    Install and readiness polling retry operations that raise
    TransientError with jittered backoff inside the phase budget.
    """

    kind = "Transient"


class PermanentError(ApporchestraError):
    """
    Permanent error - do not retry.

    The lifecycle moves the entity to ON_FIRE (or rejects the request)
    without retry when a PermanentError is raised.
    """

    kind = "Permanent"


class BadArgument(PermanentError):
    """Invoker supplied invalid input; no state change."""

    kind = "BadArgument"


class NotFound(PermanentError):
    """Unknown entity, task, location, or type id."""

    kind = "NotFound"


class PreconditionFailed(PermanentError):
    """Operation is invalid in the current state (e.g. delete while RUNNING)."""

    kind = "PreconditionFailed"


class ProviderError(PermanentError):
    """Machine provisioning failed."""

    kind = "ProviderError"


class NoMachineAvailable(ProviderError):
    """The provider has no free machine for the requested location."""

    kind = "NoMachineAvailable"


class TransientProviderError(TransientError):
    """Provider failure that may succeed on retry."""

    kind = "ProviderError"


class ScriptFailed(PermanentError):
    """A remote script exited with a non-zero status."""

    kind = "ScriptFailed"

    def __init__(
        self,
        script: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.script = script
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        message = f"Script '{script}' failed with exit code {exit_code}"
        if stderr:
            message += f": {stderr.strip()[:500]}"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["script"] = self.script
        result["exitCode"] = self.exit_code
        return result


class PhaseTimeout(PermanentError):
    """A phase exhausted its time budget."""

    kind = "Timeout"

    def __init__(self, phase: str, budget: float):
        self.phase = phase
        self.budget = budget
        super().__init__(f"Phase '{phase}' exceeded its budget of {budget:g}s")


class Cancelled(ApporchestraError):
    """Operator- or parent-initiated abort."""

    kind = "Cancelled"

    def __init__(self, message: str = "Cancelled"):
        super().__init__(message)


class InternalInvariant(ApporchestraError):
    """
    Fatal internal error (e.g. double release of a machine handle).

    The affected application is quarantined and the process logs a bug.
    """

    kind = "InternalInvariant"


class CompoundError(ApporchestraError):
    """Aggregates failures from several children or steps."""

    kind = "CompoundError"

    def __init__(self, message: str, errors: Sequence[Exception]):
        self.errors = list(errors)
        super().__init__(f"{message} ({len(self.errors)} failure(s))")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["errors"] = [error_to_dict(e) for e in self.errors]
        return result


def error_to_dict(error: BaseException, phase: Optional[str] = None) -> dict[str, Any]:
    """
    Render any exception as a JSON-safe dict.

    Args:
        error: The exception to render
        phase: Optional lifecycle phase the error occurred in

    Returns:
        Dict with at least ``type`` and ``message``
    """
    if isinstance(error, ApporchestraError):
        result = error.to_dict()
    else:
        result = {"type": type(error).__name__, "message": str(error)}
    if phase is not None:
        result["phase"] = phase
    return result
