"""Structured logging configuration for the quota gate.

This module provides a structured logging setup using Python's standard
logging module with JSON formatting for production environments.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from quotagate.core.config import settings


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Emits one JSON object per record. Quota context fields are promoted to
    the top level; any other ``extra=`` values are nested under ``"extra"``.
    """

    # Contextual fields for quota decisions
    CONTEXT_FIELDS = (
        "prefix",        # Key namespace of the gate
        "operation",     # Gate operation (check_and_increment, get_current_usage, reset)
        "backend",       # Counter store backend (memory, redis, file)
        "tokens",        # Token cost of the checked unit of work
        "limit_kind",    # Ceiling that rejected the call
        "duration_ms",   # Store round-trip duration in milliseconds
    )

    # LogRecord attributes that never belong under "extra"
    RESERVED_ATTRS = frozenset((
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "taskName",
    ))

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        record.message = record.getMessage()

        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            # Source location
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        # Unset context fields are left out rather than written as null
        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != "-":
                log_data[field] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self.RESERVED_ATTRS and key not in self.CONTEXT_FIELDS
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that fills in missing quota context fields.

    Text formats reference ``%(prefix)s`` and friends directly, so every
    record needs the attributes even when the caller passed no context.
    """

    CONTEXT_DEFAULTS = dict.fromkeys(JSONFormatter.CONTEXT_FIELDS)

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    ``settings.log_format`` picks the console format: ``text`` (default),
    ``structured`` (text plus quota context) or ``json``.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": (
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                " - prefix=%(prefix)s operation=%(operation)s backend=%(backend)s"
            )
        },
    }

    if log_format == "json":
        formatters["json"] = {"()": "quotagate.core.logging.JSONFormatter"}
        default_formatter = "json"
    elif log_format == "structured":
        default_formatter = "structured"
    else:
        default_formatter = "standard"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "quotagate.core.logging.ContextFilter"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": default_formatter,
                "stream": sys.stdout,
                "filters": ["context"],
            },
        },
        "loggers": {
            # Package records stop here; the host application's root logger
            # keeps its own handlers
            "quotagate": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging() -> None:
    """Configure logging for processes embedding the quota gate."""
    config = get_logging_config()
    logging.config.dictConfig(config)

    # Connection chatter from the redis client is rarely useful
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "quotagate") -> logging.Logger:
    """Get a logger instance with the specified name.

    Args:
        name: Logger name, defaults to "quotagate"

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def get_log_context(
    prefix: Optional[str] = None,
    operation: Optional[str] = None,
    backend: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with extra parameter.

    Args:
        prefix: Key namespace of the gate
        operation: Gate operation name
        backend: Counter store backend name
        **extra: Additional custom fields

    Returns:
        Dictionary suitable for passing as extra= parameter to logging calls

    Example:
        >>> logger.info(
        ...     "Quota rejected",
        ...     extra=get_log_context(
        ...         prefix="gemini:ratelimit",
        ...         operation="check_and_increment",
        ...         limit_kind="requests_per_minute",
        ...     )
        ... )
    """
    context = {
        "prefix": prefix,
        "operation": operation,
        "backend": backend,
    }
    context.update(extra)
    # Drop unset fields so they never shadow ContextFilter defaults
    return {k: v for k, v in context.items() if v is not None}
