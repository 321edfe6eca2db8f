"""Distributed multi-tier quota gate for rate-limited upstream resources."""

from quotagate.core.store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    get_counter_store,
)
from quotagate.core.file_store import FileCounterStore
from quotagate.exceptions import QuotaGateException, StoreUnavailableError
from quotagate.services.quota_gate import (
    CheckResult,
    LimitKind,
    QuotaConfig,
    QuotaGate,
    get_quota_gate,
)

__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "FileCounterStore",
    "get_counter_store",
    "QuotaGateException",
    "StoreUnavailableError",
    "CheckResult",
    "LimitKind",
    "QuotaConfig",
    "QuotaGate",
    "get_quota_gate",
]
