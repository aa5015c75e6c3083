"""Agent facade and daily scheduler.

Wires the state stores, the host bridge, the self-check runner and the update
manager together from settings, and exposes the operations the admin API
calls. ``start()`` runs the startup sequence and then one ``check()`` cycle a
day at the configured time.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from compose_guardian.config import Settings, get_settings
from compose_guardian.constants import DOCKER_UPDATE_DOCUMENT, SELF_CHECK_DOCUMENT
from compose_guardian.exceptions import GuardianError
from compose_guardian.host.bridge import HostBridge
from compose_guardian.logging import get_logger
from compose_guardian.selfcheck.models import SelfCheckStatus
from compose_guardian.selfcheck.runner import SelfCheckRunner
from compose_guardian.state.store import StateStore
from compose_guardian.updater.manager import UpdateManager
from compose_guardian.updater.models import ApplyResult, DockerUpdateStatus, ImageInfo
from compose_guardian.utils import utc_now

log = get_logger("compose_guardian.agent")


class GuardianAgent:
    """Keeps the host's compose stack checked, repaired and up to date."""

    def __init__(
        self,
        settings: Settings,
        bridge: HostBridge,
        self_check: SelfCheckRunner,
        updates: UpdateManager,
        stores: list[StateStore] | None = None,
    ) -> None:
        self._settings = settings
        self._bridge = bridge
        self._self_check = self_check
        self._updates = updates
        self._stores = stores or []

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> GuardianAgent:
        settings = settings or get_settings()
        bridge = HostBridge(settings)
        self_check_store = StateStore(SELF_CHECK_DOCUMENT, SelfCheckStatus, settings.state_dir)
        update_store = StateStore(DOCKER_UPDATE_DOCUMENT, DockerUpdateStatus, settings.state_dir)
        return cls(
            settings=settings,
            bridge=bridge,
            self_check=SelfCheckRunner(self_check_store, bridge, settings),
            updates=UpdateManager(update_store, bridge, settings),
            stores=[self_check_store, update_store],
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the state documents with their defaults if absent."""
        for store in self._stores:
            await store.initialize()
        log.info("agent_initialized", state_dir=self._settings.state_dir)

    async def start(self) -> None:
        """Provision host access, run a first check, then check daily.

        Raises:
            ConnectionUnavailableError: If the host never answers over SSH.
        """
        await self.initialize()
        await self._bridge.initialize_access()
        for key in self._bridge.list_authorized_keys():
            log.info(
                "authorized_key",
                key_type=key.key_type,
                comment=key.comment,
                is_agent=key.is_agent,
            )

        await self.check()
        await self.run_forever()

    async def run_forever(self) -> None:
        while True:
            delay = self.seconds_until_next_check()
            log.info("next_check_scheduled", in_seconds=int(delay))
            await asyncio.sleep(delay)
            await self.check()

    def seconds_until_next_check(self, now: datetime | None = None) -> float:
        """Seconds until the next daily check time (UTC)."""
        now = now or utc_now()
        scheduled = now.replace(
            hour=self._settings.check_hour,
            minute=self._settings.check_minute,
            second=0,
            microsecond=0,
        )
        if scheduled <= now:
            scheduled += timedelta(days=1)
        return (scheduled - now).total_seconds()

    def cleanup(self) -> None:
        """Release any state lock this process still holds on shutdown."""
        for store in self._stores:
            store.cleanup()

    # ------------------------------------------------------------------
    # Scheduled cycle
    # ------------------------------------------------------------------

    async def check(self) -> None:
        """Self-check, then update check, then apply if anything changed.

        Never raises: each step's failure is logged and the cycle moves on.
        """
        log.info("check_cycle_started")
        try:
            await self._self_check.run()
        except GuardianError as exc:
            log.warning("scheduled_self_check_failed", error=str(exc))
        except Exception:
            log.exception("scheduled_self_check_crashed")

        try:
            images = await self._updates.check_for_updates()
        except GuardianError as exc:
            log.warning("scheduled_update_check_failed", error=str(exc))
            return
        except Exception:
            log.exception("scheduled_update_check_crashed")
            return

        pending = [image.name for image in images if image.has_update]
        if not pending:
            log.info("check_cycle_completed", updates=0)
            return

        log.info("updates_available", images=pending)
        try:
            result = await self._updates.apply_update()
        except GuardianError as exc:
            log.warning("scheduled_update_failed", error=str(exc))
            return
        except Exception:
            log.exception("scheduled_update_crashed")
            return
        log.info("check_cycle_completed", updates=len(pending), apply_status=result.status.value)

    # ------------------------------------------------------------------
    # API operations
    # ------------------------------------------------------------------

    async def get_self_check_status(self) -> SelfCheckStatus:
        return await self._self_check.status()

    async def run_self_check(self) -> SelfCheckStatus:
        return await self._self_check.run()

    async def get_last_update_status(self) -> DockerUpdateStatus:
        return await self._updates.get_last_update_status()

    async def check_for_updates(self) -> list[ImageInfo]:
        return await self._updates.check_for_updates()

    async def apply_update(self) -> ApplyResult:
        return await self._updates.apply_update()
