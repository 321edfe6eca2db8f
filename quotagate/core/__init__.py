"""Core utilities for the quota gate."""

from quotagate.core.config import settings
from quotagate.core.logging import get_logger, setup_logging
from quotagate.core.store import (
    CounterStore,
    GuardedIncrement,
    InMemoryCounterStore,
    IncrementOp,
    RedisCounterStore,
    get_counter_store,
    reset_counter_store,
)
from quotagate.core.file_store import FileCounterStore

__all__ = [
    "CounterStore",
    "GuardedIncrement",
    "InMemoryCounterStore",
    "IncrementOp",
    "RedisCounterStore",
    "FileCounterStore",
    "get_counter_store",
    "reset_counter_store",
    "settings",
    "get_logger",
    "setup_logging",
]
