"""Shared fixtures for quota gate tests."""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ResponseError

from quotagate.core.store import InMemoryCounterStore, reset_counter_store
from quotagate.services.quota_gate import reset_quota_gate

# 2023-11-14 22:13:20 UTC: 40s left in the minute, 6400s left in the day
FIXED_NOW = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = FIXED_NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_quota_gate()
    reset_counter_store()
    yield
    reset_quota_gate()
    reset_counter_store()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def mock_redis():
    """Create a mock Redis client for testing.

    Values are kept as strings in ``redis.data`` and returned as bytes like
    the real client. ``redis.executions`` counts pipeline round trips.
    """
    redis = MagicMock()
    redis.data = {}
    redis.ttls = {}
    redis.executions = 0

    def _expire_stale(key):
        if key in redis.ttls and redis.ttls[key] < time.time():
            redis.data.pop(key, None)
            redis.ttls.pop(key, None)

    async def mock_get(key):
        _expire_stale(key)
        value = redis.data.get(key)
        return value.encode() if isinstance(value, str) else value

    async def mock_incrby(key, amount):
        _expire_stale(key)
        current = redis.data.get(key, "0")
        try:
            new_val = int(current) + amount
        except ValueError:
            raise ResponseError("value is not an integer or out of range")
        redis.data[key] = str(new_val)
        return new_val

    async def mock_expire(key, ttl):
        if key not in redis.data:
            return 0
        redis.ttls[key] = time.time() + ttl
        return 1

    async def mock_delete(*keys):
        removed = 0
        for key in keys:
            _expire_stale(key)
            if key in redis.data:
                removed += 1
            redis.data.pop(key, None)
            redis.ttls.pop(key, None)
        return removed

    async def mock_eval(script, num_keys, *args):
        """Mock Redis Lua script execution for CHECK_AND_INCREMENT_SCRIPT.

        - KEYS[i]: counter key
        - ARGV[3i-2]: delta
        - ARGV[3i-1]: ttl
        - ARGV[3i]: ceiling
        """
        keys = list(args[:num_keys])
        argv = [int(a) for a in args[num_keys:]]
        current = []
        invalid = None
        for key in keys:
            _expire_stale(key)
            try:
                current.append(int(redis.data.get(key, "0")))
            except ValueError:
                current.append(0)
                invalid = invalid or key
        for i, value in enumerate(current):
            delta, ceiling = argv[3 * i], argv[3 * i + 2]
            if value + delta > ceiling:
                return [i + 1, *current]
        if invalid is not None:
            raise ResponseError(f"value at {invalid} is not an integer")
        for i, key in enumerate(keys):
            await mock_incrby(key, argv[3 * i])
            await mock_expire(key, argv[3 * i + 1])
        return [0, *current]

    def mock_pipeline(transaction=True):
        pipe = MagicMock()
        commands = []
        pipe.get = lambda key: commands.append((mock_get, (key,)))
        pipe.incrby = lambda key, amount: commands.append((mock_incrby, (key, amount)))
        pipe.expire = lambda key, ttl: commands.append((mock_expire, (key, ttl)))

        async def execute():
            redis.executions += 1
            results = []
            for func, args in commands:
                results.append(await func(*args))
            commands.clear()
            return results

        pipe.execute = execute
        return pipe

    redis.get = mock_get
    redis.incrby = mock_incrby
    redis.expire = mock_expire
    redis.delete = mock_delete
    redis.eval = mock_eval
    redis.pipeline = mock_pipeline
    redis.aclose = AsyncMock()

    return redis
