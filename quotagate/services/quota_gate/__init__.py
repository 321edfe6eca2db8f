"""Multi-tier fixed-window quota enforcement for shared upstream resources.

This package decides, consistently across distributed callers, whether a
unit of work may proceed under requests-per-minute, tokens-per-minute and
requests-per-day ceilings, recording its cost in a shared counter store.
"""

from .models import CheckResult, LimitKind, QuotaConfig, WindowCounters
from .service import (
    QuotaGate,
    evaluate_ceilings,
    get_quota_gate,
    rejection_reason,
    reset_quota_gate,
)
from .windows import WindowKeys, day_bucket, derive_window_keys, minute_bucket

__all__ = [
    "CheckResult",
    "LimitKind",
    "QuotaConfig",
    "WindowCounters",
    "QuotaGate",
    "evaluate_ceilings",
    "rejection_reason",
    "get_quota_gate",
    "reset_quota_gate",
    "WindowKeys",
    "day_bucket",
    "minute_bucket",
    "derive_window_keys",
]
