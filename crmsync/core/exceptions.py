"""
Exceptions raised by CRM collaborators and by the resilience components.

These are the raw inputs to `crmsync.core.error_classifier.classify()`,
which turns any of them (or any other exception) into a ClassifiedError.
"""

from typing import Any, Dict, Mapping, Optional

__all__ = [
    "CrmApiError",
    "RateLimitedError",
    "CircuitOpenError",
    "MemoryCriticalError",
    "SyncValidationError",
]


class CrmApiError(Exception):
    """HTTP-level failure reported by the CRM API client."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        # Header names are case-insensitive on the wire
        self.headers: Dict[str, str] = {k.lower(): str(v) for k, v in (headers or {}).items()}
        self.body = body

    def __repr__(self) -> str:
        return f"CrmApiError(status_code={self.status_code!r}, message={self.message!r})"


class RateLimitedError(Exception):
    """Local token budget for an endpoint class is exhausted."""

    def __init__(self, endpoint_class: str, retry_after: float, remaining: int = 0, limit: int = 0):
        super().__init__(
            f"Rate budget exhausted for {endpoint_class!r} "
            f"({remaining}/{limit} tokens left), retry after {retry_after:.0f}s"
        )
        self.endpoint_class = endpoint_class
        self.retry_after = retry_after
        self.remaining = remaining
        self.limit = limit


class CircuitOpenError(Exception):
    """Circuit for an operation kind is open; calls are rejected until it cools down."""

    def __init__(self, operation: str, retry_after: float):
        super().__init__(f"Circuit open for {operation!r}, retry after {retry_after:.0f}s")
        self.operation = operation
        self.retry_after = retry_after


class MemoryCriticalError(MemoryError):
    """Process memory crossed the critical level during a sync run."""

    def __init__(self, usage_percent: float, critical_percent: float, batch_size: Optional[int] = None):
        super().__init__(
            f"Memory usage {usage_percent:.1f}% reached critical level {critical_percent:.0f}%"
        )
        self.usage_percent = usage_percent
        self.critical_percent = critical_percent
        self.batch_size = batch_size


class SyncValidationError(ValueError):
    """Malformed sync options or webhook event."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]
