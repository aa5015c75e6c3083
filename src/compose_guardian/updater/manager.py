"""Docker image update checks and updates.

Checking compares, for every image the compose project references, the image
ID of the running container against the ID of a freshly pulled image.
Applying pulls and then restarts the stack with ``docker compose up -d``
launched detached on the host, because the restart will usually replace the
container this agent runs in. All docker commands run on the host through
the SSH bridge.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from compose_guardian.constants import (
    LOCAL_DIGEST_NOT_FOUND,
    REMOTE_DIGEST_NOT_FOUND,
    STALE_UPDATE_CHECK_SECONDS,
)
from compose_guardian.exceptions import AlreadyInProgressError, HostCommandError
from compose_guardian.logging import get_logger
from compose_guardian.updater.models import (
    ApplyResult,
    ApplyStatus,
    DockerUpdateStatus,
    ImageInfo,
    ImageStatus,
)
from compose_guardian.utils import parse_list_lines, utc_now

if TYPE_CHECKING:
    from compose_guardian.config import Settings
    from compose_guardian.host.bridge import HostBridge
    from compose_guardian.host.shell import CommandResult
    from compose_guardian.state.store import StateStore

log = get_logger("compose_guardian.updater.manager")

# Detached dispatch only has to start the background job.
_DISPATCH_TIMEOUT = 60


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class UpdateManager:
    """Check for and apply compose image updates.

    Typical flow:
    1. ``check_for_updates()``: refresh per-image digests into the status document
    2. ``apply_update()``: pull and restart the stack if anything changed
    """

    def __init__(
        self,
        store: StateStore[DockerUpdateStatus],
        bridge: HostBridge,
        settings: Settings,
        stale_check_after: float = STALE_UPDATE_CHECK_SECONDS,
    ) -> None:
        self._store = store
        self._bridge = bridge
        self._settings = settings
        self._stale_after = timedelta(seconds=stale_check_after)

    @property
    def _compose_dir(self) -> str:
        return shlex.quote(self._settings.compose_folder_path)

    async def _host(self, command: str, timeout: float | None = None) -> CommandResult:
        if timeout is None:
            timeout = self._settings.update_command_timeout
        return await self._bridge.run_on_host(command, timeout=timeout)

    async def _pull(self, command: str) -> CommandResult:
        return await self._host(command, timeout=self._settings.update_pull_timeout)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_last_update_status(self) -> DockerUpdateStatus:
        return await self._store.read()

    def cached_status(self) -> DockerUpdateStatus:
        return self._store.get_cached()

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    async def check_for_updates(self) -> list[ImageInfo]:
        """Compare running and latest digests for every compose image.

        Per-image failures are recorded on that image. Failing to enumerate
        the images fails the whole check.

        Raises:
            AlreadyInProgressError: Another check is in flight.
            HostCommandError: The compose image list could not be read.
        """
        await self._begin_check()
        log.info("update_check_started", compose_dir=self._settings.compose_folder_path)
        start = time.perf_counter()

        try:
            images = await self._check_images()
        except (Exception, asyncio.CancelledError) as exc:
            duration_ms = _elapsed_ms(start)
            await self._finish_check(duration_ms, error=_describe(exc))
            log.error("update_check_failed", duration_ms=duration_ms, error=_describe(exc))
            raise

        duration_ms = _elapsed_ms(start)
        await self._finish_check(duration_ms, images=images)
        log.info(
            "update_check_completed",
            duration_ms=duration_ms,
            total=len(images),
            with_updates=sum(1 for image in images if image.has_update),
        )
        return images

    async def _begin_check(self) -> None:
        def start(status: DockerUpdateStatus) -> tuple[DockerUpdateStatus, str | None]:
            if status.is_applying:
                if not self._is_stale(status.timestamp):
                    return status, "Docker update"
                log.warning("update_apply_orphan_cleared", started_at=str(status.timestamp))
                status.is_applying = False
            if status.is_checking:
                if not self._is_stale(status.check_started_at):
                    return status, "Docker update check"
                log.warning(
                    "update_check_orphan_taken_over",
                    started_at=str(status.check_started_at),
                )
            now = utc_now()
            status.is_checking = True
            status.check_started_at = now
            status.timestamp = now
            status.last_error = None
            return status, None

        busy = await self._store.transact(start)
        if busy is not None:
            raise AlreadyInProgressError(busy)

    async def _finish_check(
        self,
        duration_ms: int,
        images: list[ImageInfo] | None = None,
        error: str | None = None,
    ) -> None:
        def finish(status: DockerUpdateStatus) -> DockerUpdateStatus:
            if images is not None:
                status.set_images(images)
            status.is_checking = False
            status.check_started_at = None
            status.check_duration_ms = duration_ms
            status.last_error = error
            status.timestamp = utc_now()
            return status

        await self._store.update(finish)

    async def _check_images(self) -> list[ImageInfo]:
        result = await self._host(f"cd {self._compose_dir} && docker compose config --images")
        names = parse_list_lines(result.stdout)
        log.debug("update_images_listed", images=names)
        return [await self._check_image(name) for name in names]

    async def _check_image(self, name: str) -> ImageInfo:
        current = await self._running_digest(name)
        try:
            latest = await self._latest_digest(name)
        except HostCommandError as exc:
            log.warning("update_image_check_failed", image=name, error=exc.reason)
            return ImageInfo(
                name=name,
                current_digest=LOCAL_DIGEST_NOT_FOUND,
                latest_digest=REMOTE_DIGEST_NOT_FOUND,
                has_update=False,
                status=ImageStatus.ERROR,
                error=str(exc),
            )

        has_update = current != latest
        return ImageInfo(
            name=name,
            current_digest=current,
            latest_digest=latest,
            digest=latest,
            has_update=has_update,
            status=ImageStatus.UPDATE_AVAILABLE if has_update else ImageStatus.UP_TO_DATE,
        )

    async def _running_digest(self, name: str) -> str:
        """Image ID of the first running container created from *name*."""
        template = '{{if eq .Config.Image "' + name + '"}}{{.Id}}{{end}}'
        try:
            result = await self._host(
                f"cd {self._compose_dir} && docker compose ps -q"
                f" | xargs docker inspect -f {shlex.quote(template)}"
            )
            container_ids = parse_list_lines(result.stdout)
            if not container_ids:
                return LOCAL_DIGEST_NOT_FOUND
            inspected = await self._host(
                f"docker inspect --format '{{{{.Image}}}}' {shlex.quote(container_ids[0])}"
            )
        except HostCommandError as exc:
            log.warning("update_running_digest_unavailable", image=name, error=exc.reason)
            return LOCAL_DIGEST_NOT_FOUND
        return inspected.stdout.strip() or LOCAL_DIGEST_NOT_FOUND

    async def _latest_digest(self, name: str) -> str:
        image = shlex.quote(name)
        await self._pull(f"docker pull --quiet {image}")
        result = await self._host(f"docker image inspect --format '{{{{.Id}}}}' {image}")
        return result.stdout.strip() or REMOTE_DIGEST_NOT_FOUND

    def _is_stale(self, started_at: datetime | None) -> bool:
        return started_at is None or utc_now() - started_at > self._stale_after

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply_update(self) -> ApplyResult:
        """Pull new images and restart the stack on the host.

        The restart is dispatched as a detached background job so it
        survives this container being replaced. Only if that dispatch fails
        is the update run synchronously with a bounded timeout.

        Raises:
            AlreadyInProgressError: A check or another update is in flight.
            HostCommandError: Both the dispatch and the fallback failed.
        """
        await self._begin_apply()
        try:
            result = await self._run_update()
        except (Exception, asyncio.CancelledError) as exc:
            await self._finish_apply(error=_describe(exc))
            raise
        await self._finish_apply(error=None)
        return result

    async def _begin_apply(self) -> None:
        def start(status: DockerUpdateStatus) -> tuple[DockerUpdateStatus, bool]:
            if status.is_checking and not self._is_stale(status.check_started_at):
                return status, False
            if status.is_applying and not self._is_stale(status.timestamp):
                return status, False
            status.is_applying = True
            status.timestamp = utc_now()
            return status, True

        if not await self._store.transact(start):
            raise AlreadyInProgressError("Docker update")

    async def _finish_apply(self, error: str | None) -> None:
        def finish(status: DockerUpdateStatus) -> DockerUpdateStatus:
            status.is_applying = False
            status.last_error = error
            status.timestamp = utc_now()
            return status

        await self._store.update(finish)

    async def _run_update(self) -> ApplyResult:
        try:
            return await self._dispatch_detached()
        except HostCommandError as exc:
            primary = exc
        log.warning("update_dispatch_failed", error=primary.reason)

        def record(status: DockerUpdateStatus) -> DockerUpdateStatus:
            status.last_error = str(primary)
            return status

        await self._store.update(record)

        fallback = f"cd {self._compose_dir} && docker compose pull && docker compose up -d"
        log.info("update_fallback_started", timeout=self._settings.fallback_update_timeout)
        try:
            result = await self._host(fallback, timeout=self._settings.fallback_update_timeout)
        except HostCommandError as exc:
            log.error("update_fallback_failed", error=exc.reason)
            raise HostCommandError(
                fallback,
                f"Docker update failed: {primary.reason}. Fallback also failed: {exc.reason}",
                returncode=exc.returncode,
                stderr=exc.stderr,
                timed_out=exc.timed_out,
            ) from exc

        log.info("update_fallback_completed")
        return ApplyResult(
            status=ApplyStatus.COMPLETED,
            message="Docker update completed via fallback method",
            output=result.stdout,
        )

    async def _dispatch_detached(self) -> ApplyResult:
        log_path = self._settings.update_log_path
        await self._pull(f"cd {self._compose_dir} && docker compose pull")

        script = (
            f"cd {self._compose_dir} && docker compose up -d"
            " && echo 'Docker update completed successfully'"
        )
        await self._host(
            f"nohup setsid sh -c {shlex.quote(script)}"
            f" > {shlex.quote(log_path)} 2>&1 < /dev/null &",
            timeout=_DISPATCH_TIMEOUT,
        )
        log.info("update_dispatched", log_path=log_path)
        return ApplyResult(
            status=ApplyStatus.INITIATED,
            message="Docker update started on host system",
            log_path=log_path,
        )
