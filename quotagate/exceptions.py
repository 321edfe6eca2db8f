"""Custom exceptions for the quota gate.

Quota exhaustion is deliberately absent here: a rejected check is a normal
``CheckResult`` with ``allowed=False``, not a fault.
"""

from typing import Optional


class QuotaGateException(Exception):
    """Base class for quota gate exceptions with HTTP status code.

    Callers that expose the gate over HTTP can map ``status_code`` directly
    onto their error responses.
    """
    status_code: int = 500

    def __init__(self, message: str = "Quota gate error"):
        self.message = message
        super().__init__(message)


class StoreUnavailableError(QuotaGateException):
    """Raised when a batched read, write or delete against the counter store fails.

    The quota status is indeterminate when this is raised: the caller must
    treat it as neither allowed nor denied. The originating exception is
    attached as ``__cause__``.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(
        self,
        message: str = "Counter store unavailable",
        operation: Optional[str] = None,
    ):
        self.operation = operation
        if operation:
            message = f"{operation}: {message}"
        super().__init__(message)
