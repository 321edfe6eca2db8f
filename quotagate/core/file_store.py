"""File-backed counter store for processes sharing one host.

Each counter lives in its own JSON file under a two-level, hash-sharded
directory tree. Batches hold an exclusive ``fcntl`` lock on the store's lock
file, so increments from different processes on the same host serialise
against each other. Blocking file I/O runs in a worker thread.
"""

import asyncio
import fcntl
import hashlib
import json
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

from quotagate.core.logging import get_logger
from quotagate.core.store import (
    CounterStore,
    CounterValue,
    GuardedIncrement,
    IncrementOp,
    _as_int,
)
from quotagate.exceptions import StoreUnavailableError

logger = get_logger(__name__)


class FileCounterStore(CounterStore):
    """Counter store keeping one file per counter in a shared directory.

    File layout: ``{directory}/{md5[:2]}/{md5}.counter`` where ``md5`` is the
    hex digest of the key. Each file holds ``{"value", "expires_at",
    "created_at"}``; expired files read as absent and are removed on access.
    Write batches also prune every expired file in the tree, at most once per
    ``PRUNE_INTERVAL_SECONDS`` per store instance.
    """

    backend_name = "file"
    supports_atomic = True

    LOCK_FILE = ".lock"
    SUFFIX = ".counter"
    PRUNE_INTERVAL_SECONDS = 60

    def __init__(self, directory: str | os.PathLike, clock: Callable[[], float] = time.time) -> None:
        """Initialize the file store, creating the directory if needed.

        Args:
            directory: Root directory shared by every process using the store.
            clock: Source of the current epoch time, used for expiry.
        """
        self._dir = Path(directory)
        self._dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        self._clock = clock
        self._next_prune = 0.0

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        digest = hashlib.md5(key.encode()).hexdigest()
        return self._dir / digest[:2] / f"{digest}{self.SUFFIX}"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with open(self._dir / self.LOCK_FILE, "a+") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def _read(self, key: str, now: float) -> Optional[dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        raw = path.read_text()
        try:
            data = json.loads(raw)
        except ValueError:
            # Unreadable payloads surface as raw values, never as errors
            return {"value": raw, "expires_at": None}
        if not isinstance(data, dict) or "value" not in data:
            return {"value": raw, "expires_at": None}
        expires_at = data.get("expires_at")
        if expires_at is not None and expires_at < now:
            path.unlink(missing_ok=True)
            return None
        return data

    def _write(self, key: str, value: int, ttl: int, now: float, created_at: Optional[float]) -> None:
        path = self._path(key)
        path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        data = {
            "value": value,
            "expires_at": now + ttl if ttl > 0 else None,
            "created_at": created_at if created_at is not None else now,
        }
        tmp_path = path.with_suffix(f".{os.getpid()}.tmp")
        tmp_path.write_text(json.dumps(data))
        os.replace(tmp_path, path)

    def _increment(self, key: str, delta: int, ttl: int, now: float, operation: str) -> int:
        data = self._read(key, now)
        current = _as_int(data["value"] if data else None)
        if current is None:
            raise StoreUnavailableError(f"value at {key!r} is not an integer", operation=operation)
        new_value = current + delta
        self._write(key, new_value, ttl, now, data.get("created_at") if data else None)
        return new_value

    def _is_expired_file(self, path: Path, now: float) -> bool:
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError):
            return False
        if not isinstance(data, dict):
            return False
        expires_at = data.get("expires_at")
        return expires_at is not None and expires_at < now

    def _prune_expired(self, now: float) -> int:
        removed = 0
        for path in self._dir.glob(f"*/*{self.SUFFIX}"):
            if self._is_expired_file(path, now):
                path.unlink(missing_ok=True)
                removed += 1
        self._next_prune = now + self.PRUNE_INTERVAL_SECONDS
        if removed:
            logger.debug(f"Pruned {removed} expired counters from {self._dir}")
        return removed

    def _maybe_prune(self, now: float) -> None:
        if now >= self._next_prune:
            self._prune_expired(now)

    def _batch_get_sync(self, keys: Sequence[str]) -> dict[str, CounterValue | None]:
        with self._locked():
            now = self._clock()
            result: dict[str, CounterValue | None] = {}
            for key in keys:
                data = self._read(key, now)
                result[key] = data["value"] if data else None
            return result

    def _batch_increment_sync(self, ops: Sequence[IncrementOp]) -> list[int]:
        with self._locked():
            now = self._clock()
            self._maybe_prune(now)
            for op in ops:
                data = self._read(op.key, now)
                if data is not None and _as_int(data["value"]) is None:
                    raise StoreUnavailableError(
                        f"value at {op.key!r} is not an integer",
                        operation="batch_increment_and_expire",
                    )
            return [
                self._increment(op.key, op.delta, op.ttl, now, "batch_increment_and_expire")
                for op in ops
            ]

    def _check_and_increment_sync(
        self, guards: Sequence[GuardedIncrement]
    ) -> tuple[Optional[int], list[int]]:
        with self._locked():
            now = self._clock()
            self._maybe_prune(now)
            current = []
            invalid = None
            for guard in guards:
                data = self._read(guard.key, now)
                parsed = _as_int(data["value"] if data else None)
                current.append(parsed if parsed is not None else 0)
                if parsed is None and invalid is None:
                    invalid = guard.key

            for index, guard in enumerate(guards):
                if current[index] + guard.delta > guard.ceiling:
                    return index, current

            if invalid is not None:
                raise StoreUnavailableError(
                    f"value at {invalid!r} is not an integer", operation="check_and_increment"
                )
            for guard in guards:
                self._increment(guard.key, guard.delta, guard.ttl, now, "check_and_increment")
            return None, current

    def _delete_sync(self, keys: Sequence[str]) -> int:
        with self._locked():
            now = self._clock()
            removed = 0
            for key in keys:
                if self._read(key, now) is not None:
                    self._path(key).unlink(missing_ok=True)
                    removed += 1
            return removed

    def _clear_sync(self) -> int:
        with self._locked():
            removed = 0
            for path in self._dir.glob(f"*/*{self.SUFFIX}"):
                if path.is_file():
                    path.unlink(missing_ok=True)
                    removed += 1
            return removed

    def _locked_prune(self) -> int:
        with self._locked():
            return self._prune_expired(self._clock())

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except OSError as e:
            raise StoreUnavailableError(f"file store I/O failed: {e}", operation=operation) from e

    async def batch_get(self, keys: Sequence[str]) -> dict[str, CounterValue | None]:
        return await self._run("batch_get", self._batch_get_sync, list(keys))

    async def batch_increment_and_expire(self, ops: Sequence[IncrementOp]) -> list[int]:
        return await self._run("batch_increment_and_expire", self._batch_increment_sync, list(ops))

    async def check_and_increment(
        self, guards: Sequence[GuardedIncrement]
    ) -> tuple[Optional[int], list[int]]:
        return await self._run("check_and_increment", self._check_and_increment_sync, list(guards))

    async def delete(self, keys: Sequence[str]) -> int:
        return await self._run("delete", self._delete_sync, list(keys))

    async def clear(self) -> int:
        """Remove every counter file in the store.

        Returns:
            Number of files removed.
        """
        removed = await self._run("clear", self._clear_sync)
        logger.info(f"Cleared {removed} counters from {self._dir}")
        return removed

    async def cleanup_expired(self) -> int:
        """Remove every expired counter file in the store.

        Returns:
            Number of files removed.
        """
        return await self._run("cleanup_expired", self._locked_prune)
