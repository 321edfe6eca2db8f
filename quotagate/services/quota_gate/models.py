"""Data models for quota enforcement."""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import NamedTuple, Optional


class LimitKind(str, Enum):
    """The ceiling that rejected a call, in evaluation order."""

    REQUESTS_PER_MINUTE = "requests_per_minute"
    TOKENS_PER_MINUTE = "tokens_per_minute"
    REQUESTS_PER_DAY = "requests_per_day"


@dataclass(frozen=True)
class QuotaConfig:
    """Quota ceilings shared read-only by every call.

    Attributes:
        requests_per_minute: Requests admitted per calendar minute
        tokens_per_minute: Tokens admitted per calendar minute
        requests_per_day: Requests admitted per UTC calendar day
    """
    requests_per_minute: int
    tokens_per_minute: int
    requests_per_day: int

    def __post_init__(self) -> None:
        for name in ("requests_per_minute", "tokens_per_minute", "requests_per_day"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be at least 0")

    @classmethod
    def from_settings(cls, settings) -> "QuotaConfig":
        """Create from the application settings."""
        return cls(
            requests_per_minute=settings.quota_requests_per_minute,
            tokens_per_minute=settings.quota_tokens_per_minute,
            requests_per_day=settings.quota_requests_per_day,
        )


class WindowCounters(NamedTuple):
    """Counter readings for the windows active at one instant."""

    minute_requests: int
    minute_tokens: int
    day_requests: int


@dataclass
class CheckResult:
    """Outcome of a quota check or usage read.

    Counters are post-increment when ``allowed`` is True. ``get_current_usage``
    returns ``allowed=False`` with no rejection, since it asserts no decision.

    Attributes:
        allowed: Whether the unit of work may proceed
        current_requests: Requests counted in the current minute
        current_tokens: Tokens counted in the current minute
        current_day_requests: Requests counted in the current day
        reset_minute: Time until the minute window rolls over
        reset_day: Time until the day window rolls over
        rejection_reason: Which ceiling was hit, with observed and limit values
        rejected_by: The ceiling that rejected the call
    """
    allowed: bool = False
    current_requests: int = 0
    current_tokens: int = 0
    current_day_requests: int = 0
    reset_minute: timedelta = field(default_factory=timedelta)
    reset_day: timedelta = field(default_factory=timedelta)
    rejection_reason: str = ""
    rejected_by: Optional[LimitKind] = None

    @property
    def retry_after(self) -> Optional[timedelta]:
        """Time until the rejecting window rolls over, None unless rejected."""
        if self.rejected_by is None:
            return None
        if self.rejected_by is LimitKind.REQUESTS_PER_DAY:
            return self.reset_day
        return self.reset_minute

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "allowed": self.allowed,
            "current_requests": self.current_requests,
            "current_tokens": self.current_tokens,
            "current_day_requests": self.current_day_requests,
            "reset_minute_seconds": self.reset_minute.total_seconds(),
            "reset_day_seconds": self.reset_day.total_seconds(),
            "rejection_reason": self.rejection_reason,
            "rejected_by": self.rejected_by.value if self.rejected_by else None,
        }
