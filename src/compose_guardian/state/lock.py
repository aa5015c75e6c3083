"""Filesystem mutual exclusion for state documents.

The only channel shared by every process touching the state directory is the
directory itself, so the lock is a sidecar file created with
``O_CREAT | O_EXCL``. A lock older than ``stale_after`` is presumed abandoned
by a crashed holder and may be reclaimed; the ``lockId`` recorded in the file
fences reclamation and release so a holder never deletes a lock it no longer
owns.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import random
import secrets
import socket
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from compose_guardian.constants import (
    LOCK_MAX_RETRIES,
    LOCK_RETRY_DELAY_SECONDS,
    LOCK_RETRY_JITTER_SECONDS,
    LOCK_STALE_SECONDS,
)
from compose_guardian.exceptions import LockTimeoutError
from compose_guardian.logging import get_logger

log = get_logger("compose_guardian.state.lock")


@dataclass
class LockRecord:
    """Contents of a lock file."""

    lock_id: str
    pid: int
    hostname: str
    timestamp: float  # epoch seconds

    @classmethod
    def create(cls) -> LockRecord:
        now = time.time()
        pid = os.getpid()
        return cls(
            lock_id=f"{pid}-{int(now * 1000)}-{secrets.token_hex(4)}",
            pid=pid,
            hostname=os.environ.get("HOSTNAME") or socket.gethostname(),
            timestamp=now,
        )

    def age(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "lockId": self.lock_id,
            "pid": self.pid,
            "hostname": self.hostname,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockRecord:
        try:
            return cls(
                lock_id=str(data["lockId"]),
                pid=int(data["pid"]),
                hostname=str(data.get("hostname", "unknown")),
                timestamp=float(data["timestamp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid lock record: {exc}") from exc


class FileLock:
    """Exclusive-create lock file with staleness reclamation.

    Usage::

        lock = FileLock(Path("/app/state/selfcheck-status.lock"))
        async with lock.holding():
            ...
    """

    def __init__(
        self,
        path: Path | str,
        *,
        stale_after: float = LOCK_STALE_SECONDS,
        max_retries: int = LOCK_MAX_RETRIES,
        retry_delay: float = LOCK_RETRY_DELAY_SECONDS,
        retry_jitter: float = LOCK_RETRY_JITTER_SECONDS,
    ) -> None:
        self._path = Path(path)
        self._stale_after = stale_after
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._retry_jitter = retry_jitter
        self._held: LockRecord | None = None

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def acquire(self) -> LockRecord:
        """Acquire the lock, waiting with jittered retries.

        Raises:
            LockTimeoutError: If the lock is still held after ``max_retries`` waits.
        """
        retries = 0
        while True:
            # Fresh record per attempt so a long wait never yields a lock that
            # already looks stale to other processes.
            record = LockRecord.create()
            if self._try_create(record):
                self._held = record
                return record

            if self._reclaim_if_stale():
                continue

            if retries >= self._max_retries:
                log.error("state_lock_timeout", path=str(self._path), retries=retries)
                raise LockTimeoutError(str(self._path), retries)
            retries += 1
            await asyncio.sleep(self._retry_delay + random.uniform(0, self._retry_jitter))

    def release(self, record: LockRecord) -> bool:
        """Release the lock if it is still the one *record* created.

        Returns False when the lock was already gone or had been reclaimed
        by another process.
        """
        if self._held is not None and self._held.lock_id == record.lock_id:
            self._held = None

        try:
            current = self._read_record(self._path)
        except FileNotFoundError:
            log.warning("state_lock_already_released", path=str(self._path))
            return False
        except ValueError:
            log.warning("state_lock_unreadable_on_release", path=str(self._path))
            return False

        if current.lock_id != record.lock_id:
            log.warning(
                "state_lock_lost",
                path=str(self._path),
                ours=record.lock_id,
                holder=current.lock_id,
            )
            return False

        return self._remove_if_matches(record.lock_id)

    @contextlib.asynccontextmanager
    async def holding(self) -> AsyncIterator[LockRecord]:
        """Hold the lock for the duration of the ``async with`` block."""
        record = await self.acquire()
        try:
            yield record
        finally:
            self.release(record)

    def release_held(self) -> bool:
        """Release the lock if this instance currently holds it.

        A lock created by any other holder is left alone, even one from
        this same process.
        """
        record = self._held
        if record is None:
            return False
        log.warning("state_lock_released_on_cleanup", path=str(self._path), lock_id=record.lock_id)
        return self.release(record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _try_create(self, record: LockRecord) -> bool:
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, json.dumps(record.to_dict()).encode())
        finally:
            os.close(fd)
        return True

    @staticmethod
    def _read_record(path: Path) -> LockRecord:
        raw = path.read_text(encoding="utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"unparsable lock file: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("lock file is not an object")
        return LockRecord.from_dict(data)

    def _reclaim_if_stale(self) -> bool:
        """Remove an abandoned lock. Returns True if the caller should retry at once."""
        try:
            existing = self._read_record(self._path)
        except FileNotFoundError:
            return True
        except ValueError:
            return self._reclaim_corrupt()

        age = existing.age()
        if age <= self._stale_after:
            return False

        # Re-read: another reclaimer may have replaced it since the first read.
        try:
            current = self._read_record(self._path)
        except FileNotFoundError:
            return True
        except ValueError:
            return False
        if current.lock_id != existing.lock_id:
            return True

        log.warning(
            "state_lock_stale",
            path=str(self._path),
            holder_pid=existing.pid,
            holder_host=existing.hostname,
            age_seconds=round(age, 1),
        )
        return self._remove_if_matches(existing.lock_id)

    def _reclaim_corrupt(self) -> bool:
        # A freshly created lock may not have its record written yet.
        try:
            age = time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age <= self._stale_after:
            return False
        log.warning("state_lock_corrupt", path=str(self._path))
        return self._remove_if_matches(None)

    def _remove_if_matches(self, lock_id: str | None) -> bool:
        """Atomically take the lock file aside and delete it if it is *lock_id*.

        The rename succeeds for exactly one caller. If the file taken aside
        turns out to be a different, live lock it is linked back in place.

        Between the rename and the link back the path is empty, and a third
        process may create its own lock there. The link then fails, the taken
        lock cannot be restored and its holder and the third process both
        believe they hold the lock. This is logged as an error; the window is
        a few syscalls wide and only opens when two reclaimers race.
        """
        tombstone = self._path.with_name(f"{self._path.name}.{secrets.token_hex(6)}.reclaim")
        try:
            os.rename(self._path, tombstone)
        except FileNotFoundError:
            return True

        try:
            taken_id: str | None = self._read_record(tombstone).lock_id
        except (FileNotFoundError, ValueError):
            taken_id = None

        if taken_id != lock_id:
            try:
                os.link(tombstone, self._path)
            except FileExistsError:
                log.error(
                    "state_lock_restore_conflict",
                    path=str(self._path),
                    displaced=taken_id,
                )
            tombstone.unlink(missing_ok=True)
            log.warning(
                "state_lock_reclaim_raced",
                path=str(self._path),
                expected=lock_id,
                found=taken_id,
            )
            return False

        tombstone.unlink(missing_ok=True)
        return True
