"""Multi-tier fixed-window quota enforcement over a shared counter store.

Every process that builds a QuotaGate with the same prefix against the same
store enforces one shared quota. The gate itself keeps no mutable state: all
counters live in the store.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from quotagate.core.logging import get_log_context, get_logger
from quotagate.core.store import CounterStore, GuardedIncrement, IncrementOp
from quotagate.exceptions import StoreUnavailableError

from .models import CheckResult, LimitKind, QuotaConfig, WindowCounters
from .windows import DAY_SECONDS, KEY_FORMATS, MINUTE_SECONDS, WindowKeys, derive_window_keys

logger = get_logger(__name__)

T = TypeVar("T")

# Ceilings in evaluation order; atomic stores report violations by position
_GUARD_ORDER = (
    LimitKind.REQUESTS_PER_MINUTE,
    LimitKind.TOKENS_PER_MINUTE,
    LimitKind.REQUESTS_PER_DAY,
)


def evaluate_ceilings(
    config: QuotaConfig, counters: WindowCounters, tokens: int
) -> Optional[LimitKind]:
    """Return the first ceiling the call would violate, or None if it fits.

    The request checks are already-at checks (``>=`` before adding) while the
    token check is a would-exceed check (``>`` after adding), so a token cost
    landing exactly on the ceiling is admitted.
    """
    if counters.minute_requests >= config.requests_per_minute:
        return LimitKind.REQUESTS_PER_MINUTE
    if counters.minute_tokens + tokens > config.tokens_per_minute:
        return LimitKind.TOKENS_PER_MINUTE
    if counters.day_requests >= config.requests_per_day:
        return LimitKind.REQUESTS_PER_DAY
    return None


def rejection_reason(
    kind: LimitKind, config: QuotaConfig, counters: WindowCounters, tokens: int
) -> str:
    """Human readable description of a rejection."""
    if kind is LimitKind.REQUESTS_PER_MINUTE:
        return (
            f"limit exceeded: requests per minute "
            f"({counters.minute_requests}/{config.requests_per_minute})"
        )
    if kind is LimitKind.TOKENS_PER_MINUTE:
        return (
            f"limit exceeded: tokens per minute "
            f"({counters.minute_tokens}+{tokens} > {config.tokens_per_minute})"
        )
    return (
        f"limit exceeded: requests per day "
        f"({counters.day_requests}/{config.requests_per_day})"
    )


class QuotaGate:
    """Enforces requests-per-minute, tokens-per-minute and requests-per-day ceilings.

    Provides:
    - Batched two-phase check-and-increment (one read, one write round trip)
    - Optional single-step atomic mode for stores that support it
    - Read-only usage snapshots
    - Reset of the currently active windows

    Key format:
    - {prefix}:minute:{minute_bucket} - Requests in the current minute
    - {prefix}:tokens:minute:{minute_bucket} - Tokens in the current minute
    - {prefix}:day:{day_bucket} - Requests in the current day

    Two-phase mode is a soft limit: callers racing between the read and the
    write can overshoot a ceiling by up to (racing callers - 1).
    """

    DEFAULT_PREFIX = "gemini:ratelimit"
    MINUTE_KEY_TTL_SECONDS = 2 * MINUTE_SECONDS
    DAY_KEY_TTL_SECONDS = DAY_SECONDS + 3600

    def __init__(
        self,
        store: CounterStore,
        config: QuotaConfig,
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], float] = time.time,
        key_format: str = "index",
        atomic: bool = False,
        timeout: Optional[float] = None,
    ) -> None:
        """Initialize the quota gate.

        Args:
            store: Counter store shared by every caller enforcing this quota.
            config: Quota ceilings.
            prefix: Key namespace.
            clock: Source of the current epoch time.
            key_format: 'index' or 'calendar' bucket identifiers.
            atomic: Run check-and-increment as one store operation when the
                store supports it.
            timeout: Seconds allowed for each store round trip, None for no limit.

        Raises:
            ValueError: If key_format or timeout is invalid.
        """
        if key_format not in KEY_FORMATS:
            raise ValueError(f"Unknown key format: {key_format!r}")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")
        self._store = store
        self._config = config
        self._prefix = prefix
        self._clock = clock
        self._key_format = key_format
        self._timeout = timeout
        self._atomic = atomic and store.supports_atomic
        if atomic and not store.supports_atomic:
            logger.info(
                f"{store.backend_name} counter store has no atomic check; "
                "using two-phase check-and-increment"
            )

    @property
    def config(self) -> QuotaConfig:
        return self._config

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def store(self) -> CounterStore:
        return self._store

    @property
    def atomic(self) -> bool:
        return self._atomic

    def _window_keys(self) -> WindowKeys:
        return derive_window_keys(self._prefix, self._clock(), self._key_format)

    def _context(self, operation: str, **extra: Any) -> dict:
        return get_log_context(
            prefix=self._prefix,
            operation=operation,
            backend=self._store.backend_name,
            **extra,
        )

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        """Await one store round trip, bounding it by the configured timeout."""
        started = time.perf_counter()
        try:
            if self._timeout is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Counter store {operation} timed out after {self._timeout}s",
                extra=self._context(operation),
            )
            raise
        except StoreUnavailableError as e:
            logger.error(f"Counter store {operation} failed: {e}", extra=self._context(operation))
            raise
        except Exception as e:
            logger.error(f"Counter store {operation} failed: {e}", extra=self._context(operation))
            raise StoreUnavailableError(str(e), operation=operation) from e
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.debug(
                f"Counter store {operation} took {duration_ms:.1f}ms",
                extra=self._context(operation, duration_ms=round(duration_ms, 3)),
            )

    def _parse_counter(self, key: str, raw: Any) -> int:
        if raw is None:
            return 0
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Non-numeric counter at {key}: {raw!r}. Treating as 0.")
            return 0

    async def _read_counters(self, keys: WindowKeys, operation: str) -> WindowCounters:
        values = await self._call(self._store.batch_get(keys.as_list()), operation)
        return WindowCounters(
            minute_requests=self._parse_counter(keys.minute_requests, values.get(keys.minute_requests)),
            minute_tokens=self._parse_counter(keys.minute_tokens, values.get(keys.minute_tokens)),
            day_requests=self._parse_counter(keys.day_requests, values.get(keys.day_requests)),
        )

    def _increments(self, keys: WindowKeys, tokens: int) -> list[IncrementOp]:
        return [
            IncrementOp(keys.minute_requests, 1, self.MINUTE_KEY_TTL_SECONDS),
            IncrementOp(keys.minute_tokens, tokens, self.MINUTE_KEY_TTL_SECONDS),
            IncrementOp(keys.day_requests, 1, self.DAY_KEY_TTL_SECONDS),
        ]

    def _guards(self, keys: WindowKeys, tokens: int) -> list[GuardedIncrement]:
        ceilings = (
            self._config.requests_per_minute,
            self._config.tokens_per_minute,
            self._config.requests_per_day,
        )
        return [
            GuardedIncrement(op.key, op.delta, op.ttl, ceiling)
            for op, ceiling in zip(self._increments(keys, tokens), ceilings)
        ]

    @staticmethod
    def _snapshot(keys: WindowKeys, counters: WindowCounters) -> CheckResult:
        return CheckResult(
            current_requests=counters.minute_requests,
            current_tokens=counters.minute_tokens,
            current_day_requests=counters.day_requests,
            reset_minute=keys.reset_minute,
            reset_day=keys.reset_day,
        )

    def _reject(
        self, keys: WindowKeys, counters: WindowCounters, kind: LimitKind, tokens: int
    ) -> CheckResult:
        result = self._snapshot(keys, counters)
        result.rejected_by = kind
        result.rejection_reason = rejection_reason(kind, self._config, counters, tokens)
        logger.info(
            f"Quota rejected for {self._prefix}: {result.rejection_reason}",
            extra=self._context("check_and_increment", tokens=tokens, limit_kind=kind.value),
        )
        return result

    def _admit(self, keys: WindowKeys, counters: WindowCounters, tokens: int) -> CheckResult:
        # Local arithmetic on the reads; re-reading would pick up other writers
        result = self._snapshot(
            keys,
            WindowCounters(
                minute_requests=counters.minute_requests + 1,
                minute_tokens=counters.minute_tokens + tokens,
                day_requests=counters.day_requests + 1,
            ),
        )
        result.allowed = True
        logger.debug(
            f"Quota admitted for {self._prefix}: "
            f"{result.current_requests}/{self._config.requests_per_minute} rpm, "
            f"{result.current_tokens}/{self._config.tokens_per_minute} tpm, "
            f"{result.current_day_requests}/{self._config.requests_per_day} rpd",
            extra=self._context("check_and_increment", tokens=tokens),
        )
        return result

    async def check_and_increment(self, tokens: int) -> CheckResult:
        """Decide whether a unit of work costing ``tokens`` may proceed.

        If it may, its cost is recorded in the store before returning.

        Args:
            tokens: Token cost of the unit of work, at least 0.

        Returns:
            CheckResult with ``allowed`` set and, when rejected, the ceiling hit.

        Raises:
            ValueError: If tokens is negative.
            StoreUnavailableError: If the store could not be read or written;
                the quota status is then unknown.
            asyncio.TimeoutError: If a store round trip exceeded the timeout.
        """
        if tokens < 0:
            raise ValueError("tokens must be at least 0")
        keys = self._window_keys()

        if self._atomic:
            violation, current = await self._call(
                self._store.check_and_increment(self._guards(keys, tokens)),
                "check_and_increment",
            )
            counters = WindowCounters(*current)
            if violation is not None:
                return self._reject(keys, counters, _GUARD_ORDER[violation], tokens)
            return self._admit(keys, counters, tokens)

        counters = await self._read_counters(keys, "check_and_increment")
        kind = evaluate_ceilings(self._config, counters, tokens)
        if kind is not None:
            return self._reject(keys, counters, kind, tokens)

        await self._call(
            self._store.batch_increment_and_expire(self._increments(keys, tokens)),
            "check_and_increment",
        )
        return self._admit(keys, counters, tokens)

    async def get_current_usage(self) -> CheckResult:
        """Read the current windows' counters without changing them.

        Returns:
            CheckResult with ``allowed=False`` (no decision), the counters and
            both reset durations.

        Raises:
            StoreUnavailableError: If the store could not be read.
        """
        keys = self._window_keys()
        counters = await self._read_counters(keys, "get_current_usage")
        return self._snapshot(keys, counters)

    async def reset(self) -> None:
        """Delete the counters of the current minute and day windows.

        Older windows are left to expire. Succeeds when the keys are absent.

        Raises:
            StoreUnavailableError: If the store rejected the delete.
        """
        keys = self._window_keys()
        removed = await self._call(self._store.delete(keys.as_list()), "reset")
        logger.info(
            f"Reset quota windows for {self._prefix} ({removed} counters removed)",
            extra=self._context("reset"),
        )

    async def close(self) -> None:
        """Close the underlying counter store."""
        await self._store.close()


_quota_gate: Optional[QuotaGate] = None


def get_quota_gate(
    store: Optional[CounterStore] = None,
    config: Optional[QuotaConfig] = None,
    force_new: bool = False,
) -> QuotaGate:
    """Get the global quota gate instance, building it from settings on first use."""
    global _quota_gate
    if _quota_gate is not None and not force_new:
        return _quota_gate

    from quotagate.core.config import settings
    from quotagate.core.store import get_counter_store

    _quota_gate = QuotaGate(
        store=store or get_counter_store(),
        config=config or QuotaConfig.from_settings(settings),
        prefix=settings.quota_prefix,
        key_format=settings.quota_key_format,
        atomic=settings.quota_atomic,
        timeout=settings.quota_store_timeout_seconds,
    )
    return _quota_gate


def reset_quota_gate() -> None:
    """Reset the global quota gate instance."""
    global _quota_gate
    _quota_gate = None
