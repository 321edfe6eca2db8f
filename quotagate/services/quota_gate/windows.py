"""Fixed-window bucketing and counter key derivation."""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

MINUTE_SECONDS = 60
DAY_SECONDS = 86400

KEY_FORMATS = ("index", "calendar")

# Zero padding keeps lexical order identical to numeric order
_MINUTE_INDEX_WIDTH = 10
_DAY_INDEX_WIDTH = 8


@dataclass(frozen=True)
class WindowKeys:
    """Counter keys and rollover times for the windows active at one instant."""

    minute_requests: str
    minute_tokens: str
    day_requests: str
    reset_minute: timedelta
    reset_day: timedelta

    def as_list(self) -> list[str]:
        return [self.minute_requests, self.minute_tokens, self.day_requests]


def window_start(now: float, window_seconds: int) -> int:
    """Epoch second at which the window containing ``now`` began."""
    return math.floor(now / window_seconds) * window_seconds


def time_until_next_window(now: float, window_seconds: int) -> timedelta:
    """Time remaining until the window containing ``now`` rolls over."""
    return timedelta(seconds=window_start(now, window_seconds) + window_seconds - now)


def minute_bucket(now: float, key_format: str = "index") -> str:
    """Bucket identifier of the calendar minute containing ``now``.

    Calendar buckets are always formatted in UTC, whatever the host's local
    zone. Deployments sharing keys with processes that format local time
    must run those processes on UTC hosts.

    Examples:
        >>> minute_bucket(1700000000)
        '0028333333'
        >>> minute_bucket(1700000000, "calendar")
        '2023-11-14:22:13'
    """
    if key_format == "calendar":
        return datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d:%H:%M")
    return f"{math.floor(now / MINUTE_SECONDS):0{_MINUTE_INDEX_WIDTH}d}"


def day_bucket(now: float, key_format: str = "index") -> str:
    """Bucket identifier of the UTC calendar day containing ``now``.

    The day rolls over at UTC midnight for both formats, matching the
    ``reset_day`` duration.

    Examples:
        >>> day_bucket(1700000000)
        '00019675'
        >>> day_bucket(1700000000, "calendar")
        '2023-11-14'
    """
    if key_format == "calendar":
        return datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d")
    return f"{math.floor(now / DAY_SECONDS):0{_DAY_INDEX_WIDTH}d}"


def derive_window_keys(prefix: str, now: float, key_format: str = "index") -> WindowKeys:
    """Build the three counter keys for the windows active at ``now``.

    Args:
        prefix: Key namespace shared by every caller enforcing the same quota.
        now: Current epoch time in seconds.
        key_format: 'index' for zero-padded bucket indices, 'calendar' for
            UTC date strings.

    Returns:
        WindowKeys for the minute-requests, minute-tokens and day-requests
        counters, with the time left in each window.

    Raises:
        ValueError: If key_format is unknown.
    """
    if key_format not in KEY_FORMATS:
        raise ValueError(f"Unknown key format: {key_format!r}")
    minute = minute_bucket(now, key_format)
    day = day_bucket(now, key_format)
    return WindowKeys(
        minute_requests=f"{prefix}:minute:{minute}",
        minute_tokens=f"{prefix}:tokens:minute:{minute}",
        day_requests=f"{prefix}:day:{day}",
        reset_minute=time_until_next_window(now, MINUTE_SECONDS),
        reset_day=time_until_next_window(now, DAY_SECONDS),
    )
