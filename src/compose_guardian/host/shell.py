"""Subprocess helper shared by the host bridge.

All process spawning in Compose Guardian goes through ``run_process``.
Arguments are passed as a vector, never through a local shell.
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Sequence
from dataclasses import dataclass

from compose_guardian.exceptions import CommandError
from compose_guardian.logging import get_logger

log = get_logger("compose_guardian.host.shell")

_STDERR_TAIL = 500


@dataclass
class CommandResult:
    """Captured output of a successful command."""

    stdout: str
    stderr: str
    returncode: int = 0


async def run_process(
    args: Sequence[str],
    *,
    timeout: float | None = None,
    display: str | None = None,
) -> CommandResult:
    """Run *args* and return its output.

    The process is killed if *timeout* elapses or the awaiting task is
    cancelled. *display* replaces the argument vector in errors and logs.

    Raises:
        CommandError: On spawn failure, timeout, or non-zero exit.
    """
    shown = display or shlex.join(args)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise CommandError(shown, f"could not start: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        await _kill(proc)
        log.warning("command_timeout", cmd=shown, timeout=timeout)
        raise CommandError(shown, f"timed out after {timeout:g}s", timed_out=True) from None
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    if proc.returncode != 0:
        tail = err.strip()[-_STDERR_TAIL:]
        log.debug("command_failed", cmd=shown, returncode=proc.returncode, stderr=tail)
        raise CommandError(
            shown,
            f"exit code {proc.returncode}: {tail}" if tail else f"exit code {proc.returncode}",
            returncode=proc.returncode,
            stderr=err,
        )
    return CommandResult(stdout=out, stderr=err, returncode=0)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
