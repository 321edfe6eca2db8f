from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Quota gate settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Quota ceilings
    quota_requests_per_minute: int = 60
    quota_tokens_per_minute: int = 100000
    quota_requests_per_day: int = 10000

    # Key namespace shared by every instance enforcing the same quota
    quota_prefix: str = "gemini:ratelimit"
    quota_key_format: Literal["index", "calendar"] = "index"

    # Run check-and-increment as one server-side operation when the store supports it
    quota_atomic: bool = False

    # Per round-trip timeout; None waits as long as the caller's context allows
    quota_store_timeout_seconds: float | None = None

    # Counter store settings
    quota_store_backend: Literal["memory", "redis", "file"] = "memory"
    quota_file_store_dir: str = ".quotagate"

    # Redis settings
    redis_url: str = "redis://localhost:6379/0"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "quota_requests_per_minute",
        "quota_tokens_per_minute",
        "quota_requests_per_day",
    )
    @classmethod
    def validate_ceiling_non_negative(cls, v: int) -> int:
        """Validate quota ceilings are not negative."""
        if v < 0:
            raise ValueError("Quota ceilings must be at least 0")
        return v

    @field_validator("quota_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Validate the key prefix is usable as a namespace."""
        v = v.strip()
        if not v:
            raise ValueError("quota_prefix must not be empty")
        return v

    @field_validator("quota_store_timeout_seconds")
    @classmethod
    def validate_timeout_positive(cls, v: float | None) -> float | None:
        """Validate timeout values are positive."""
        if v is not None and v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
