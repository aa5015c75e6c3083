"""Exception hierarchy for Compose Guardian.

Unit-of-work errors (one script, one image, one file) are caught and recorded
by the orchestrators; setup errors (lock, script list, host reachability)
propagate to the caller.
"""

from __future__ import annotations


class GuardianError(Exception):
    """Base class for all Compose Guardian errors."""


class LockTimeoutError(GuardianError):
    """The state document lock could not be acquired within the retry bound."""

    def __init__(self, lock_path: str, attempts: int) -> None:
        self.lock_path = lock_path
        self.attempts = attempts
        super().__init__(f"Failed to acquire lock {lock_path} after {attempts} retries")


class CommandError(GuardianError):
    """A local command failed, timed out, or never started."""

    _label = "command"

    def __init__(
        self,
        command: str,
        reason: str,
        returncode: int | None = None,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        self.command = command
        self.reason = reason
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        super().__init__(f'Failed to execute {self._label} "{command}": {reason}')


class HostCommandError(CommandError):
    """A command run on the host over SSH failed, timed out, or lost its connection."""

    _label = "host command"


class AlreadyInProgressError(GuardianError):
    """A run of the same operation is already in flight."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} is already running")


class ConnectionUnavailableError(GuardianError):
    """The host could not be reached at the start of an operation."""


class IntegrityError(GuardianError):
    """Reference tree reconciliation could not be performed."""


class ScriptFailureError(GuardianError):
    """A self-check script exited unsuccessfully."""

    def __init__(self, script: str, reason: str) -> None:
        self.script = script
        self.reason = reason
        super().__init__(f"Script failed: {reason}")


class ScriptTimeoutError(GuardianError):
    """A self-check script exceeded its timeout."""

    def __init__(self, script: str, timeout: float) -> None:
        self.script = script
        self.timeout = timeout
        super().__init__(f"Script timed out after {timeout:g}s")
