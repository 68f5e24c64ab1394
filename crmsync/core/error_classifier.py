"""
Error classification and retry policy.

`classify()` is a pure function: any exception raised while talking to the
CRM (or by the local resilience components) becomes a ClassifiedError, and
every retry / abort decision downstream switches on its `kind`.

    | Kind         | Retryable | Base delay                             |
    |--------------|-----------|----------------------------------------|
    | rate_limit   | yes       | provider retry-after, else 60s         |
    | auth         | no        | -                                      |
    | quota        | no        | -                                      |
    | server_error | yes       | 30s (502: 10s, 503: 60s, 504: 45s)     |
    | connection   | yes       | timeout 15s, reset 20s, tls 30s, dns 60s |
    | memory       | yes       | 5s                                     |
    | validation   | no        | -                                      |
    | generic      | no        | -                                      |

ErrorClassifier binds the policy to the circuit breakers: it records
outcomes per operation kind and refuses retries while a circuit is open.
"""

import random
import socket
import ssl
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from crmsync.core.circuit_breaker import CircuitBreakerRegistry, CircuitState
from crmsync.core.exceptions import (
    CircuitOpenError,
    CrmApiError,
    MemoryCriticalError,
    RateLimitedError,
    SyncValidationError,
)

__all__ = [
    "ErrorKind",
    "ClassifiedError",
    "classify",
    "ErrorClassifier",
]


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    QUOTA = "quota"
    SERVER_ERROR = "server_error"
    CONNECTION = "connection"
    MEMORY = "memory"
    VALIDATION = "validation"
    GENERIC = "generic"


# Kinds that are never retried automatically and need an operator
OPERATOR_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.QUOTA})

# Kinds whose delay grows exponentially with the attempt number
BACKOFF_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.SERVER_ERROR, ErrorKind.CONNECTION})

DEFAULT_RATE_LIMIT_DELAY = 60.0
DEFAULT_SERVER_DELAY = 30.0
SERVER_DELAYS = {502: 10.0, 503: 60.0, 504: 45.0}
CONNECTION_DELAYS = {"timeout": 15.0, "reset": 20.0, "tls": 30.0, "dns": 60.0}
MEMORY_DELAY = 5.0
MAX_BACKOFF = 60.0

CONNECTION_KEYWORDS = (
    "connection", "timeout", "timed out", "dns", "ssl", "certificate",
    "network", "unreachable", "refused", "reset", "broken pipe",
)
MEMORY_KEYWORDS = ("memory", "out of memory", "memory limit", "memory exhausted", "allocation")
RATE_LIMIT_KEYWORDS = ("rate limit", "too many requests")
AUTH_KEYWORDS = ("unauthorized", "invalid token", "access token", "forbidden")


@dataclass(frozen=True)
class ClassifiedError:
    """
    Tagged classification of a failure.

    Attributes:
        kind: ErrorKind
        retryable: Whether automatic retry is allowed at all
        retry_after: Base delay in seconds before a retry (None when not retryable)
        max_retries: Attempt budget; no retry once attempt_number >= max_retries
        message: Human-readable error message
        operation: Operation kind the failure belongs to ("sync", "webhook", ...)
        status_code: HTTP status when the failure came from the API
        subtype: Finer-grained cause ("timeout", "dns", "circuit_open", ...)
        error_type: Class name of the original exception
    """

    kind: ErrorKind
    retryable: bool
    retry_after: Optional[float]
    max_retries: int
    message: str
    operation: str = "sync"
    status_code: Optional[int] = None
    subtype: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def needs_operator(self) -> bool:
        return self.kind in OPERATOR_KINDS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


def _header_seconds(headers: Mapping[str, str], name: str) -> Optional[float]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def _connection_subtype(message: str) -> str:
    lowered = message.lower()
    if "timed out" in lowered or "timeout" in lowered:
        return "timeout"
    if any(k in lowered for k in ("ssl", "certificate", "tls")):
        return "tls"
    if any(k in lowered for k in ("dns", "name or service not known", "getaddrinfo", "nodename")):
        return "dns"
    return "reset"


def _from_status(
    status_code: int,
    message: str,
    headers: Mapping[str, str],
    operation: str,
    max_retries: int,
    error_type: str,
) -> "ClassifiedError":
    common = dict(message=message, operation=operation, status_code=status_code, error_type=error_type)

    if status_code == 429:
        retry_after = _header_seconds(headers, "retry-after")
        return ClassifiedError(
            ErrorKind.RATE_LIMIT, True,
            retry_after if retry_after is not None else DEFAULT_RATE_LIMIT_DELAY,
            max_retries, **common,
        )
    if status_code in (401, 403):
        return ClassifiedError(ErrorKind.AUTH, False, None, 1, subtype=str(status_code), **common)
    if status_code == 402:
        return ClassifiedError(ErrorKind.QUOTA, False, None, 1, **common)
    if status_code >= 500:
        delay = _header_seconds(headers, "retry-after")
        if delay is None:
            delay = SERVER_DELAYS.get(status_code, DEFAULT_SERVER_DELAY)
        return ClassifiedError(ErrorKind.SERVER_ERROR, True, delay, max_retries, **common)
    if status_code in (400, 422):
        return ClassifiedError(ErrorKind.VALIDATION, False, None, 1, **common)
    if status_code == 404:
        return ClassifiedError(ErrorKind.GENERIC, False, None, 1, subtype="not_found", **common)
    return ClassifiedError(ErrorKind.GENERIC, False, None, 1, **common)


def classify(
    exc: BaseException,
    context: Optional[Mapping[str, Any]] = None,
    max_retries: int = 3,
) -> ClassifiedError:
    """
    Classify an exception.

    Args:
        exc: The raw exception
        context: Optional context; "operation" selects the circuit the failure counts against
        max_retries: Attempt budget for retryable kinds

    Returns:
        ClassifiedError
    """
    operation = str((context or {}).get("operation", "sync"))
    message = str(exc) or type(exc).__name__
    error_type = type(exc).__name__

    if isinstance(exc, RateLimitedError):
        return ClassifiedError(
            ErrorKind.RATE_LIMIT, True, exc.retry_after, max_retries, message,
            operation=operation, subtype="local_budget", error_type=error_type,
        )

    if isinstance(exc, CircuitOpenError):
        # Not worth retrying inline; the queue may retry once the circuit cools down
        return ClassifiedError(
            ErrorKind.GENERIC, True, exc.retry_after, 1, message,
            operation=operation, subtype="circuit_open", error_type=error_type,
        )

    if isinstance(exc, MemoryError):
        subtype = "critical" if isinstance(exc, MemoryCriticalError) else None
        return ClassifiedError(
            ErrorKind.MEMORY, True, MEMORY_DELAY, min(2, max_retries), message,
            operation=operation, subtype=subtype, error_type=error_type,
        )

    if isinstance(exc, SyncValidationError):
        return ClassifiedError(
            ErrorKind.VALIDATION, False, None, 1, message, operation=operation, error_type=error_type,
        )

    if isinstance(exc, CrmApiError) and exc.status_code is not None:
        return _from_status(exc.status_code, message, exc.headers, operation, max_retries, error_type)

    if isinstance(exc, httpx.HTTPStatusError):
        headers = {k.lower(): v for k, v in exc.response.headers.items()}
        return _from_status(exc.response.status_code, message, headers, operation, max_retries, error_type)

    if isinstance(exc, (httpx.TimeoutException, TimeoutError, socket.timeout)):
        subtype = "timeout"
    elif isinstance(exc, ssl.SSLError):
        subtype = "tls"
    elif isinstance(exc, socket.gaierror):
        subtype = "dns"
    elif isinstance(exc, (httpx.TransportError, ConnectionError)):
        subtype = _connection_subtype(message)
    else:
        subtype = None

    if subtype is not None:
        return ClassifiedError(
            ErrorKind.CONNECTION, True, CONNECTION_DELAYS[subtype], max_retries, message,
            operation=operation, subtype=subtype, error_type=error_type,
        )

    # Fall back to the message text
    lowered = message.lower()
    if any(k in lowered for k in RATE_LIMIT_KEYWORDS):
        return ClassifiedError(
            ErrorKind.RATE_LIMIT, True, DEFAULT_RATE_LIMIT_DELAY, max_retries, message,
            operation=operation, error_type=error_type,
        )
    if any(k in lowered for k in AUTH_KEYWORDS):
        return ClassifiedError(ErrorKind.AUTH, False, None, 1, message, operation=operation, error_type=error_type)
    if any(k in lowered for k in MEMORY_KEYWORDS):
        return ClassifiedError(
            ErrorKind.MEMORY, True, MEMORY_DELAY, min(2, max_retries), message,
            operation=operation, error_type=error_type,
        )
    if any(k in lowered for k in CONNECTION_KEYWORDS):
        subtype = _connection_subtype(message)
        return ClassifiedError(
            ErrorKind.CONNECTION, True, CONNECTION_DELAYS[subtype], max_retries, message,
            operation=operation, subtype=subtype, error_type=error_type,
        )

    return ClassifiedError(ErrorKind.GENERIC, False, None, 1, message, operation=operation, error_type=error_type)


class ErrorClassifier:
    """Classification plus circuit bookkeeping per operation kind."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        max_retries: int = 3,
        jitter: bool = True,
        rng: Callable[[], float] = random.random,
    ):
        self.breakers = breakers
        self.max_retries = max_retries
        self.jitter = jitter
        self._rng = rng

    def classify(self, exc: BaseException, context: Optional[Mapping[str, Any]] = None) -> ClassifiedError:
        """Classify with this classifier's budget; context["max_retries"] overrides it per run."""
        max_retries = int((context or {}).get("max_retries", self.max_retries))
        return classify(exc, context, max_retries=max_retries)

    def record_success(self, operation: str) -> None:
        self.breakers.get(operation).record_success()

    def record_failure(self, error: ClassifiedError) -> CircuitState:
        return self.breakers.get(error.operation).record_failure()

    def check_circuit(self, operation: str) -> None:
        """Raise CircuitOpenError if the operation's circuit rejects calls."""
        self.breakers.get(operation).check()

    def should_retry(self, error: ClassifiedError, attempt_number: int) -> bool:
        if not error.retryable:
            return False
        if attempt_number >= error.max_retries:
            return False
        return not self.breakers.get(error.operation).is_open()

    def retry_delay(self, error: ClassifiedError, attempt_number: int) -> float:
        """
        Seconds to wait before the next attempt.

        Backoff kinds grow as 2^(attempt-1) up to 60s but never below the
        kind's base delay; up to 10% jitter is added on top.
        """
        base = error.retry_after if error.retry_after is not None else 1.0
        if error.kind in BACKOFF_KINDS:
            delay = max(base, min(2 ** max(attempt_number - 1, 0), MAX_BACKOFF))
        else:
            delay = base
        if self.jitter:
            delay += delay * 0.1 * self._rng()
        return delay

    def circuit_status(self) -> Dict[str, Dict[str, Any]]:
        return self.breakers.get_all_status()

    def reset(self, operation: Optional[str] = None) -> None:
        self.breakers.reset(operation)
