"""Lock-guarded JSON documents.

Each ``StateStore`` owns one ``<name>.json`` file in the state directory and
the ``<name>.lock`` sidecar guarding it. Writes go to a uniquely named temp
file that is renamed over the target, so the document on disk is always the
last complete value or absent. The in-memory cache is keyed on the file's
stat signature and is never trusted across processes.
"""

from __future__ import annotations

import copy
import json
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from compose_guardian.logging import get_logger
from compose_guardian.state.lock import FileLock

log = get_logger("compose_guardian.state.store")


class StateModel(Protocol):
    """Interface a document model must provide to be stored."""

    @classmethod
    def default(cls) -> Any: ...

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Any: ...

    def to_dict(self) -> dict[str, Any]: ...

    def validate(self) -> None: ...


T = TypeVar("T", bound=StateModel)
R = TypeVar("R")

_Signature = tuple[int, int, int]


class StateStore(Generic[T]):
    """Read/modify/write access to one named JSON document."""

    def __init__(
        self,
        name: str,
        model: type[T],
        state_dir: Path | str,
        lock: FileLock | None = None,
    ) -> None:
        self._name = name
        self._model = model
        self._dir = Path(state_dir)
        self._path = self._dir / f"{name}.json"
        self._lock = lock or FileLock(self._dir / f"{name}.lock")
        self._cache: T | None = None
        self._signature: _Signature | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock(self) -> FileLock:
        return self._lock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Ensure the document exists, writing the default if missing or corrupt."""
        self._dir.mkdir(parents=True, exist_ok=True)
        async with self._lock.holding():
            signature = self._stat_signature()
            value = self._load_from_disk()
            if value is None:
                self._write(self._model.default())
            else:
                self._cache = value
                self._signature = signature
        log.info("state_store_initialized", document=self._name, path=str(self._path))

    async def read(self) -> T:
        """Return a copy of the current value."""
        self._dir.mkdir(parents=True, exist_ok=True)
        async with self._lock.holding():
            return copy.deepcopy(self._load())

    async def update(self, fn: Callable[[T], T]) -> T:
        """Apply *fn* to the current value and persist the result atomically.

        *fn* receives a private copy. Returning a value equal to the current
        one leaves the file untouched.
        """

        def apply(current: T) -> tuple[T, T]:
            new = fn(current)
            return new, new

        return await self.transact(apply)

    async def transact(self, fn: Callable[[T], tuple[T, R]]) -> R:
        """Like ``update`` but *fn* also returns a result for the caller.

        This is the atomic check-and-set primitive::

            def try_start(status):
                if status.is_running:
                    return status, False
                status.is_running = True
                return status, True

            started = await store.transact(try_start)
        """
        self._dir.mkdir(parents=True, exist_ok=True)
        async with self._lock.holding():
            current = self._load()
            new, result = fn(copy.deepcopy(current))
            new.validate()
            if new != current or not self._path.exists():
                self._write(new)
            return copy.deepcopy(result)

    def get_cached(self) -> T:
        """Last known value without locking; may be stale or the default."""
        if self._cache is not None:
            return copy.deepcopy(self._cache)
        return self._model.default()

    async def reset(self) -> None:
        """Replace the document with the default value."""
        self._dir.mkdir(parents=True, exist_ok=True)
        async with self._lock.holding():
            self._write(self._model.default())
        log.info("state_store_reset", document=self._name)

    def cleanup(self) -> None:
        """Release this document's lock if this process still holds it."""
        self._lock.release_held()

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _stat_signature(self) -> _Signature | None:
        try:
            st = self._path.stat()
        except FileNotFoundError:
            return None
        # Every write is a rename, so the inode changes even when two writes
        # land within one mtime tick.
        return (st.st_mtime_ns, st.st_ino, st.st_size)

    def _load(self) -> T:
        signature = self._stat_signature()
        if self._cache is not None and signature is not None and signature == self._signature:
            return self._cache

        value = self._load_from_disk()
        if value is None:
            value = self._model.default()
        self._cache = value
        self._signature = signature
        return value

    def _load_from_disk(self) -> T | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("document root is not an object")
            value = self._model.from_dict(data)
            value.validate()
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            # Valid JSON of the wrong shape is as unusable as a torn write.
            log.warning("state_document_unreadable", document=self._name, error=str(exc))
            return None
        return value

    def _write(self, value: T) -> None:
        tmp = self._path.with_name(f"{self._path.name}.{os.getpid()}.{time.time_ns()}.tmp")
        payload = json.dumps(value.to_dict(), indent=2)
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self._path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            log.error("state_document_write_failed", document=self._name, error=str(exc))
            raise

        self._cache = copy.deepcopy(value)
        self._signature = self._stat_signature()
