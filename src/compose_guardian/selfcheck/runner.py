"""Self-check orchestration.

A run moves the ``selfcheck-status`` document through
``never_run -> running -> {success, partial, failure, connection_failed}``:

1. Check-and-set into running (rejects a concurrent run)
2. Load the ordered script list from the host
3. Reconcile the reference file tree onto the target tree
4. Run every script in order, recording each result as it lands
5. Derive the overall status from the script results

The store lock is held only for each individual document update, never for
the whole run.
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from compose_guardian.constants import DEFAULT_SELF_CHECK_SCRIPTS, STALE_SELF_CHECK_SECONDS
from compose_guardian.exceptions import (
    AlreadyInProgressError,
    ConnectionUnavailableError,
    HostCommandError,
    IntegrityError,
    ScriptFailureError,
    ScriptTimeoutError,
)
from compose_guardian.logging import get_logger
from compose_guardian.selfcheck.integrity import load_ignore_patterns, reconcile_tree
from compose_guardian.selfcheck.models import OverallStatus, ScriptResult, SelfCheckStatus
from compose_guardian.utils import parse_list_lines, timed_operation, utc_now

if TYPE_CHECKING:
    from compose_guardian.config import Settings
    from compose_guardian.host.bridge import HostBridge
    from compose_guardian.state.store import StateStore

log = get_logger("compose_guardian.selfcheck.runner")


def derive_overall_status(results: Iterable[ScriptResult]) -> OverallStatus:
    """``success`` if all succeeded, ``failure`` if none did, else ``partial``."""
    outcomes = [r.success for r in results]
    succeeded = sum(outcomes)
    if succeeded == len(outcomes):
        return OverallStatus.SUCCESS
    if succeeded == 0:
        return OverallStatus.FAILURE
    return OverallStatus.PARTIAL


class SelfCheckRunner:
    """Run the integrity check and the host remediation scripts."""

    def __init__(
        self,
        store: StateStore[SelfCheckStatus],
        bridge: HostBridge,
        settings: Settings,
        stale_run_after: float = STALE_SELF_CHECK_SECONDS,
    ) -> None:
        self._store = store
        self._bridge = bridge
        self._settings = settings
        self._stale_run_after = timedelta(seconds=stale_run_after)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self) -> SelfCheckStatus:
        return await self._store.read()

    def cached_status(self) -> SelfCheckStatus:
        return self._store.get_cached()

    async def summary(self) -> dict[str, Any]:
        return (await self.status()).summary()

    async def reset(self) -> None:
        await self._store.reset()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> SelfCheckStatus:
        """Execute one full self-check and return the final status.

        Raises:
            AlreadyInProgressError: Another run is in flight.
            ConnectionUnavailableError: The script list could not be loaded.
        """
        await self._try_start()
        log.info("selfcheck_started")

        try:
            scripts = await self._load_script_list()
        except ConnectionUnavailableError as exc:
            await self._finalize_connection_failed(str(exc))
            raise
        except (Exception, asyncio.CancelledError):
            await self._finalize(force_failure=True)
            raise

        try:
            await self._run_integrity_check()
            for script in scripts:
                await self._run_script(script)
        except (Exception, asyncio.CancelledError):
            log.exception("selfcheck_aborted")
            await self._finalize(force_failure=True)
            raise

        return await self._finalize()

    async def _try_start(self) -> None:
        def start(status: SelfCheckStatus) -> tuple[SelfCheckStatus, bool]:
            if status.is_running:
                if not self._is_orphaned(status):
                    return status, False
                log.warning("selfcheck_orphaned_run_taken_over", last_run=str(status.last_run))
            status.is_running = True
            status.last_run = utc_now()
            status.overall_status = OverallStatus.NEVER_RUN
            status.scripts = {}
            status.integrity_check = None
            status.connection_error = None
            return status, True

        if not await self._store.transact(start):
            raise AlreadyInProgressError("Self-check")

    def _is_orphaned(self, status: SelfCheckStatus) -> bool:
        return status.last_run is None or utc_now() - status.last_run > self._stale_run_after

    async def _load_script_list(self) -> list[str]:
        """Fetch the ordered script list from the host.

        An unreachable host is fatal to the run. A reachable host without a
        list file falls back to the built-in default list.
        """
        path = shlex.quote(self._settings.script_list_file)
        try:
            result = await self._bridge.run_on_host(
                f"if [ -f {path} ]; then cat {path}; fi", timeout=60
            )
        except HostCommandError as exc:
            raise ConnectionUnavailableError(
                f"Could not load script list from host: {exc.reason}"
            ) from exc

        scripts = parse_list_lines(result.stdout)
        if not scripts:
            log.warning(
                "selfcheck_script_list_missing",
                path=self._settings.script_list_file,
                fallback=len(DEFAULT_SELF_CHECK_SCRIPTS),
            )
            return list(DEFAULT_SELF_CHECK_SCRIPTS)
        return scripts

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_integrity_check(self) -> ScriptResult:
        reference = Path(self._settings.reference_dir)
        target = Path(self._settings.target_dir)
        ignore_name = self._settings.ignore_file_name
        error: str | None = None

        async with timed_operation("selfcheck_integrity", log=log) as timing:
            try:
                patterns = [ignore_name, *load_ignore_patterns(target / ignore_name)]
                report = await asyncio.to_thread(reconcile_tree, reference, target, patterns)
            except (IntegrityError, OSError) as exc:
                error = str(exc)

        if error is None:
            result = ScriptResult(
                success=report.success,
                message=report.message,
                duration_ms=timing["elapsed_ms"],
            )
            log.info(
                "selfcheck_integrity_done",
                fixed=len(report.files_fixed),
                removed=len(report.files_removed),
                errors=len(report.errors),
            )
        else:
            result = ScriptResult(
                success=False,
                message=f"Integrity check failed: {error}",
                duration_ms=timing["elapsed_ms"],
            )
            log.warning("selfcheck_integrity_failed", error=error)

        def record(status: SelfCheckStatus) -> SelfCheckStatus:
            status.integrity_check = result
            return status

        await self._store.update(record)
        return result

    async def _run_script(self, script: str) -> ScriptResult:
        failure: ScriptFailureError | ScriptTimeoutError | None = None
        log.info("selfcheck_script_started", script=script)

        async with timed_operation("selfcheck_script", log=log, script=script) as timing:
            try:
                await self._execute_script(script)
            except (ScriptFailureError, ScriptTimeoutError) as exc:
                failure = exc

        if failure is None:
            result = ScriptResult(
                success=True,
                message="Script completed successfully",
                duration_ms=timing["elapsed_ms"],
            )
            log.info("selfcheck_script_succeeded", script=script, duration_ms=result.duration_ms)
        else:
            result = ScriptResult(
                success=False, message=str(failure), duration_ms=timing["elapsed_ms"]
            )
            log.warning("selfcheck_script_failed", script=script, error=str(failure))

        def record(status: SelfCheckStatus) -> SelfCheckStatus:
            status.scripts[script] = result
            return status

        await self._store.update(record)
        return result

    async def _execute_script(self, script: str) -> None:
        timeout = self._settings.script_timeout_seconds
        try:
            await self._bridge.run_on_host(self._script_command(script), timeout=timeout)
        except HostCommandError as exc:
            if exc.timed_out:
                raise ScriptTimeoutError(script, timeout) from exc
            raise ScriptFailureError(script, exc.reason) from exc

    def _script_command(self, script: str) -> str:
        script_path = f"{self._settings.script_directory}/{script}"
        wrapper = self._settings.script_wrapper_file
        if wrapper:
            return f"{shlex.quote(wrapper)} {shlex.quote(script_path)}"
        return shlex.quote(script_path)

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _finalize(self, force_failure: bool = False) -> SelfCheckStatus:
        def finish(status: SelfCheckStatus) -> SelfCheckStatus:
            status.is_running = False
            status.overall_status = (
                OverallStatus.FAILURE
                if force_failure
                else derive_overall_status(status.scripts.values())
            )
            return status

        final = await self._store.update(finish)
        log.info(
            "selfcheck_completed",
            overall_status=final.overall_status.value,
            succeeded=sum(1 for r in final.scripts.values() if r.success),
            total=len(final.scripts),
        )
        return final

    async def _finalize_connection_failed(self, error: str) -> None:
        def finish(status: SelfCheckStatus) -> SelfCheckStatus:
            status.is_running = False
            status.overall_status = OverallStatus.CONNECTION_FAILED
            status.connection_error = error
            return status

        await self._store.update(finish)
        log.error("selfcheck_connection_failed", error=error)
