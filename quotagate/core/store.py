"""Counter store abstraction layer for the quota gate.

Provides a pluggable counter backend system with in-memory and Redis
implementations. Every store speaks the same batched contract: one round trip
to read several counters, one round trip to increment several counters and
refresh their expirations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence
import asyncio
import time

from redis.exceptions import RedisError

from quotagate.core.logging import get_logger
from quotagate.core.redis_lua import CHECK_AND_INCREMENT_SCRIPT
from quotagate.exceptions import StoreUnavailableError

logger = get_logger(__name__)

CounterValue = bytes | str | int


@dataclass(frozen=True)
class IncrementOp:
    """Increment ``key`` by ``delta`` and refresh its TTL to ``ttl`` seconds."""

    key: str
    delta: int
    ttl: int


@dataclass(frozen=True)
class GuardedIncrement:
    """An increment that is only applied if ``current + delta <= ceiling``."""

    key: str
    delta: int
    ttl: int
    ceiling: int


@dataclass
class _CounterEntry:
    """Internal counter entry with TTL tracking."""

    value: bytes
    expires_at: float | None = None

    def is_expired(self, now: float | None = None) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return (time.time() if now is None else now) > self.expires_at


def _as_int(value: CounterValue | None) -> int | None:
    """Parse a stored counter, returning None when it is not an integer."""
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class CounterStore(ABC):
    """Abstract base class for counter stores.

    All store implementations must inherit from this class and implement
    the abstract methods. Implementations raise ``StoreUnavailableError`` for
    any failure to complete a request; an absent key is never an error.
    """

    backend_name: str = "abstract"

    # Stores that can evaluate guarded increments in one step set this
    supports_atomic: bool = False

    @abstractmethod
    async def batch_get(self, keys: Sequence[str]) -> dict[str, CounterValue | None]:
        """Read several counters in one round trip.

        Args:
            keys: The counter keys to read.

        Returns:
            Mapping of every requested key to its raw value, or None when absent.
        """
        pass

    @abstractmethod
    async def batch_increment_and_expire(self, ops: Sequence[IncrementOp]) -> list[int]:
        """Increment several counters and refresh their TTLs in one round trip.

        Args:
            ops: Increments to apply. Absent counters are created at ``delta``.

        Returns:
            The post-increment value of each counter, in ``ops`` order.
        """
        pass

    @abstractmethod
    async def delete(self, keys: Sequence[str]) -> int:
        """Remove counters. Absent keys are ignored.

        Args:
            keys: The counter keys to remove.

        Returns:
            Number of counters that existed and were removed.
        """
        pass

    async def check_and_increment(
        self, guards: Sequence[GuardedIncrement]
    ) -> tuple[Optional[int], list[int]]:
        """Evaluate guards in order and apply every increment only if all pass.

        Args:
            guards: Guarded increments, evaluated in sequence order.

        Returns:
            ``(violation, current)`` where ``violation`` is the index of the
            first guard that failed (None when all increments were applied)
            and ``current`` holds the pre-increment counter values.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support atomic checks")

    async def close(self) -> None:
        """Release any connections held by the store."""
        pass


class InMemoryCounterStore(CounterStore):
    """In-memory counter store with TTL support.

    This is the default store. It keeps all counters in a Python dictionary
    and expires them lazily based on TTL. Writes also sweep out expired
    counters, at most once per ``SWEEP_INTERVAL_SECONDS``, since window
    buckets that have rolled over are never read again.

    Note: This store is not distributed and counters are lost when the
    process restarts. Quotas are only shared by callers in the same process.
    """

    backend_name = "memory"
    supports_atomic = True

    SWEEP_INTERVAL_SECONDS = 60

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Source of the current epoch time, used for expiry.
        """
        self._data: dict[str, _CounterEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._next_sweep = 0.0

    def _sweep_expired(self, now: float) -> int:
        expired_keys = [key for key, entry in self._data.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._data[key]
        self._next_sweep = now + self.SWEEP_INTERVAL_SECONDS
        return len(expired_keys)

    def _maybe_sweep(self, now: float) -> None:
        if now >= self._next_sweep:
            self._sweep_expired(now)

    def _live_entry(self, key: str, now: float) -> _CounterEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._data[key]
            return None
        return entry

    def _apply(self, key: str, delta: int, ttl: int, now: float) -> int:
        entry = self._live_entry(key, now)
        current = _as_int(entry.value if entry else None)
        new_value = current + delta
        expires_at = now + ttl if ttl > 0 else None
        self._data[key] = _CounterEntry(value=str(new_value).encode(), expires_at=expires_at)
        return new_value

    def _check_integers(self, keys: Sequence[str], now: float, operation: str) -> None:
        for key in keys:
            entry = self._live_entry(key, now)
            if entry is not None and _as_int(entry.value) is None:
                raise StoreUnavailableError(
                    f"value at {key!r} is not an integer", operation=operation
                )

    async def batch_get(self, keys: Sequence[str]) -> dict[str, CounterValue | None]:
        async with self._lock:
            now = self._clock()
            result: dict[str, CounterValue | None] = {}
            for key in keys:
                entry = self._live_entry(key, now)
                result[key] = entry.value if entry else None
            return result

    async def batch_increment_and_expire(self, ops: Sequence[IncrementOp]) -> list[int]:
        async with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            # Validate first so a bad counter leaves the whole batch unapplied
            self._check_integers([op.key for op in ops], now, "batch_increment_and_expire")
            return [self._apply(op.key, op.delta, op.ttl, now) for op in ops]

    async def check_and_increment(
        self, guards: Sequence[GuardedIncrement]
    ) -> tuple[Optional[int], list[int]]:
        async with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            current = []
            for guard in guards:
                entry = self._live_entry(guard.key, now)
                parsed = _as_int(entry.value if entry else None)
                current.append(parsed if parsed is not None else 0)

            for index, guard in enumerate(guards):
                if current[index] + guard.delta > guard.ceiling:
                    return index, current

            self._check_integers([g.key for g in guards], now, "check_and_increment")
            for guard in guards:
                self._apply(guard.key, guard.delta, guard.ttl, now)
            return None, current

    async def delete(self, keys: Sequence[str]) -> int:
        async with self._lock:
            now = self._clock()
            removed = 0
            for key in keys:
                if self._live_entry(key, now) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    async def clear(self) -> None:
        """Clear all counters from the store."""
        async with self._lock:
            self._data.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired counters from the store.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            return self._sweep_expired(self._clock())


class RedisCounterStore(CounterStore):
    """Redis-based counter store shared by every process using the same server.

    Batches are sent as MULTI/EXEC pipelines. Atomic checks run
    ``CHECK_AND_INCREMENT_SCRIPT`` server-side.

    Redis does not roll back a MULTI/EXEC block when one command fails, so an
    ``INCRBY`` on a non-integer counter in ``batch_increment_and_expire``
    still applies the other increments in the batch before the error is
    raised. ``check_and_increment`` validates every counter first and writes
    nothing in that case.

    Example:
        >>> store = RedisCounterStore(redis_url="redis://localhost:6379/0")
        >>> await store.batch_get(["gemini:ratelimit:day:00019675"])
    """

    backend_name = "redis"
    supports_atomic = True

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
    ) -> None:
        """Initialize the Redis store.

        Args:
            redis_client: Optional pre-built ``redis.asyncio`` client.
            redis_url: Redis connection URL, used when no client is given.
        """
        from quotagate.core.config import settings

        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url

    async def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def batch_get(self, keys: Sequence[str]) -> dict[str, CounterValue | None]:
        try:
            client = await self._get_client()
            pipe = client.pipeline(transaction=True)
            for key in keys:
                pipe.get(key)
            values = await pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError(f"failed to get current values: {e}", operation="batch_get") from e
        return dict(zip(keys, values))

    async def batch_increment_and_expire(self, ops: Sequence[IncrementOp]) -> list[int]:
        try:
            client = await self._get_client()
            pipe = client.pipeline(transaction=True)
            for op in ops:
                pipe.incrby(op.key, op.delta)
                pipe.expire(op.key, op.ttl)
            results = await pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError(
                f"failed to increment counters: {e}", operation="batch_increment_and_expire"
            ) from e
        # Every other reply is the EXPIRE acknowledgement
        return [int(value) for value in results[0::2]]

    async def check_and_increment(
        self, guards: Sequence[GuardedIncrement]
    ) -> tuple[Optional[int], list[int]]:
        args: list[int] = []
        for guard in guards:
            args.extend([guard.delta, guard.ttl, guard.ceiling])
        try:
            client = await self._get_client()
            result = await client.eval(
                CHECK_AND_INCREMENT_SCRIPT,
                len(guards),
                *[guard.key for guard in guards],
                *args,
            )
        except RedisError as e:
            logger.error(f"Lua script execution failed: {e}")
            raise StoreUnavailableError(
                f"failed to check and increment counters: {e}", operation="check_and_increment"
            ) from e
        violation = int(result[0])
        current = [int(value) for value in result[1:]]
        return (violation - 1 if violation else None), current

    async def delete(self, keys: Sequence[str]) -> int:
        try:
            client = await self._get_client()
            return int(await client.delete(*keys))
        except RedisError as e:
            raise StoreUnavailableError(f"failed to delete counters: {e}", operation="delete") from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


# Global store instance (singleton pattern)
_store_instance: CounterStore | None = None


def get_counter_store(
    backend: str | None = None,
    redis_url: str | None = None,
    directory: str | None = None,
    force_new: bool = False,
) -> CounterStore:
    """Get or create the global counter store instance.

    Args:
        backend: Store backend to use ('memory', 'redis', 'file', or None to
            use settings.quota_store_backend).
        redis_url: Redis connection URL. If not provided, uses settings.redis_url.
        directory: Directory for the file backend. If not provided, uses
            settings.quota_file_store_dir.
        force_new: If True, create a new instance even if one exists.

    Returns:
        A CounterStore instance.

    Raises:
        ValueError: If the backend name is unknown.
    """
    global _store_instance

    if _store_instance is not None and not force_new:
        return _store_instance

    # Import settings here to avoid circular imports
    from quotagate.core.config import settings

    backend = (backend or settings.quota_store_backend).lower()

    if backend == "redis":
        _store_instance = RedisCounterStore(redis_url=redis_url or settings.redis_url)
    elif backend == "file":
        from quotagate.core.file_store import FileCounterStore
        _store_instance = FileCounterStore(directory or settings.quota_file_store_dir)
    elif backend == "memory":
        _store_instance = InMemoryCounterStore()
    else:
        raise ValueError(f"Unknown counter store backend: {backend!r}")

    logger.info(f"Using {backend} counter store")
    return _store_instance


def reset_counter_store() -> None:
    """Reset the global counter store instance.

    This is primarily useful for testing.
    """
    global _store_instance
    _store_instance = None
