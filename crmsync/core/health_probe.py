"""
Upstream health probe.

Performs one lightweight CRM call per check, keeps a bounded history of
results, and derives a cached verdict:

    HEALTHY    consecutive failures < failure_threshold, latency acceptable
    DEGRADED   average latency above degradation_threshold_ms
    UNHEALTHY  failure_threshold consecutive failed checks

The average latency only looks at successful checks made since the last
failure, so a single fast success after an outage is enough to recover.

The verdict is advisory. The sync driver may skip a non-forced run while
the API is UNHEALTHY; nothing else is blocked by it.

Process-local: every worker probes on its own.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from cachetools import TTLCache

from crmsync.core.logging_config import get_logger
from crmsync.core.typing import utc_now

logger = get_logger(__name__)

__all__ = ["HealthStatus", "HealthRecord", "HealthProbe"]


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthRecord:
    checked_at: datetime
    success: bool
    latency_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "success": self.success,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


class HealthProbe:
    """Samples upstream availability and latency through `ping`."""

    def __init__(
        self,
        ping: Callable[[], Any],
        failure_threshold: int = 3,
        degradation_threshold_ms: float = 1000.0,
        cache_ttl: float = 60.0,
        check_interval: float = 300.0,
        history_size: int = 50,
        latency_window: int = 5,
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self._ping = ping
        self.failure_threshold = failure_threshold
        self.degradation_threshold_ms = degradation_threshold_ms
        self.cache_ttl = cache_ttl
        self.check_interval = check_interval
        self.latency_window = latency_window
        self.enabled = enabled
        self._clock = clock
        self._timer = timer
        self._history: Deque[HealthRecord] = deque(maxlen=history_size)
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=cache_ttl, timer=lambda: self._clock().timestamp())
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, ping: Callable[[], Any], settings: Any, **overrides: Any) -> "HealthProbe":
        kwargs: Dict[str, Any] = dict(
            failure_threshold=settings.HEALTH_FAILURE_THRESHOLD,
            degradation_threshold_ms=settings.HEALTH_DEGRADATION_THRESHOLD_MS,
            cache_ttl=settings.HEALTH_CACHE_TTL,
            check_interval=settings.HEALTH_CHECK_INTERVAL,
            history_size=settings.HEALTH_HISTORY_SIZE,
            latency_window=settings.HEALTH_LATENCY_WINDOW,
            enabled=settings.HEALTH_ENABLED,
        )
        kwargs.update(overrides)
        return cls(ping, **kwargs)

    def check(self) -> HealthRecord:
        """Perform one remote call and record the outcome."""
        started = self._timer()
        error = None
        try:
            self._ping()
            success = True
        except Exception as e:
            success = False
            error = f"{type(e).__name__}: {e}"
        latency_ms = round((self._timer() - started) * 1000, 2)

        record = HealthRecord(checked_at=self._clock(), success=success, latency_ms=latency_ms, error=error)
        with self._lock:
            self._history.append(record)
            self._cache.clear()

        if success:
            logger.debug("upstream_health_check", success=True, latency_ms=latency_ms)
        else:
            logger.warning(
                "upstream_health_check_failed",
                latency_ms=latency_ms,
                error=error,
                consecutive_failures=self.consecutive_failures,
            )
        return record

    @property
    def consecutive_failures(self) -> int:
        count = 0
        for record in reversed(self._history):
            if record.success:
                break
            count += 1
        return count

    def _recent_latencies(self) -> List[float]:
        latencies: List[float] = []
        for record in reversed(self._history):
            if not record.success:
                break
            latencies.append(record.latency_ms)
            if len(latencies) >= self.latency_window:
                break
        return latencies

    def _evaluate(self) -> HealthStatus:
        if self.consecutive_failures >= self.failure_threshold:
            return HealthStatus.UNHEALTHY
        latencies = self._recent_latencies()
        if latencies and sum(latencies) / len(latencies) > self.degradation_threshold_ms:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def status(self) -> HealthStatus:
        """Cached verdict; checks the API first when there is no history yet."""
        if not self.enabled:
            return HealthStatus.HEALTHY

        with self._lock:
            cached = self._cache.get("status")
        if cached is not None:
            return cached

        if not self._history:
            self.check()

        with self._lock:
            verdict = self._evaluate()
            self._cache["status"] = verdict
        return verdict

    def is_healthy(self) -> bool:
        return self.status() != HealthStatus.UNHEALTHY

    def should_check(self) -> bool:
        """True when the last check is older than check_interval."""
        if not self.enabled:
            return False
        if not self._history:
            return True
        elapsed = (self._clock() - self._history[-1].checked_at).total_seconds()
        return elapsed >= self.check_interval

    def recent_checks(self, limit: int = 10) -> List[HealthRecord]:
        return list(self._history)[-limit:]

    def stats(self) -> Dict[str, Any]:
        """History summary. Never triggers a remote call."""
        with self._lock:
            records = list(self._history)
            verdict = self._evaluate() if records else None

        latencies = [r.latency_ms for r in records]
        successful = sum(1 for r in records if r.success)
        return {
            "enabled": self.enabled,
            "status": verdict.value if verdict else None,
            "total_checks": len(records),
            "successful_checks": successful,
            "failed_checks": len(records) - successful,
            "success_rate": round(successful / len(records) * 100, 2) if records else 0.0,
            "avg_latency_ms": round(sum(latencies) / len(latencies), 2) if latencies else 0.0,
            "min_latency_ms": min(latencies) if latencies else 0.0,
            "max_latency_ms": max(latencies) if latencies else 0.0,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "degradation_threshold_ms": self.degradation_threshold_ms,
            "last_check": records[-1].to_dict() if records else None,
        }

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._cache.clear()
        logger.info("upstream_health_reset")
