"""
Memory-aware batch sizing.

The governor samples this process's resident memory (psutil) against the
effective limit (configured, container cgroup, or physical memory) and
resizes the next page of a sync run:

- usage above the threshold (80%) halves the page size, floored at min_size
- usage comfortably below it (threshold - 20 points) grows the size by 10%,
  capped at max_size and at the caller's requested limit
- usage at the alert level (85%) asks the caller to collect garbage, once per page
- usage at the critical level (95%) aborts the run with MemoryCriticalError

Samples are process-local and never persisted.
"""

import gc
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import psutil

from crmsync.core.exceptions import MemoryCriticalError
from crmsync.core.health_thresholds import Threshold, ThresholdStatus, check_threshold
from crmsync.core.logging_config import get_logger
from crmsync.core.typing import utc_now

logger = get_logger(__name__)

__all__ = ["MemorySample", "BatchPlan", "MemoryGovernor", "format_bytes", "detect_memory_limit"]

# cgroup v1 reports "no limit" as a huge number
_CGROUP_UNLIMITED = 1 << 60


@dataclass(frozen=True)
class MemorySample:
    used_bytes: int
    limit_bytes: int
    sampled_at: datetime

    @property
    def usage_percent(self) -> float:
        if self.limit_bytes <= 0:
            return 0.0
        return self.used_bytes / self.limit_bytes * 100


@dataclass(frozen=True)
class BatchPlan:
    current_size: int
    min_size: int
    max_size: int

    def __post_init__(self):
        if not (1 <= self.min_size <= self.current_size <= self.max_size):
            raise ValueError(
                f"Invalid batch plan: min={self.min_size} current={self.current_size} max={self.max_size}"
            )

    def resized(self, size: int) -> "BatchPlan":
        return replace(self, current_size=max(self.min_size, min(self.max_size, size)))


def format_bytes(num_bytes: float, precision: int = 2) -> str:
    """1536 -> '1.5 KB'."""
    units = ("B", "KB", "MB", "GB", "TB")
    value = float(max(num_bytes, 0))
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, precision):g} {units[unit]}"


def detect_memory_limit(configured_mb: int = 0) -> int:
    """Effective memory limit in bytes: configured, cgroup, then physical memory."""
    if configured_mb > 0:
        return configured_mb * 1024 * 1024

    for path in (Path("/sys/fs/cgroup/memory.max"), Path("/sys/fs/cgroup/memory/memory.limit_in_bytes")):
        try:
            raw = path.read_text().strip()
        except OSError:
            continue
        if raw.isdigit() and 0 < int(raw) < _CGROUP_UNLIMITED:
            return int(raw)

    return int(psutil.virtual_memory().total)


def _process_rss() -> int:
    return int(psutil.Process().memory_info().rss)


class MemoryGovernor:
    """Process-local memory sampling and adaptive batch planning."""

    def __init__(
        self,
        threshold_percent: float = 80.0,
        alert_percent: float = 85.0,
        critical_percent: float = 95.0,
        min_batch_size: int = 10,
        max_batch_size: int = 500,
        limit_bytes: Optional[int] = None,
        sampler: Optional[Callable[[], Tuple[int, int]]] = None,
        history_size: int = 100,
        growth_factor: float = 1.1,
        headroom_percent: float = 20.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.threshold_percent = threshold_percent
        self.levels = Threshold(warning=alert_percent, critical=critical_percent, unit="%", name="memory_usage")
        self.min_batch_size = min_batch_size
        self.max_batch_size = max_batch_size
        self.growth_factor = growth_factor
        self.headroom_percent = headroom_percent
        self._limit_bytes = limit_bytes
        self._sampler = sampler
        self._clock = clock
        self._history: Deque[MemorySample] = deque(maxlen=history_size)
        self._peak_bytes = 0
        self._gc_page: Optional[int] = None
        self._gc_runs = 0

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "MemoryGovernor":
        kwargs: Dict[str, Any] = dict(
            threshold_percent=settings.MEMORY_THRESHOLD_PERCENT,
            alert_percent=settings.MEMORY_ALERT_PERCENT,
            critical_percent=settings.MEMORY_CRITICAL_PERCENT,
            min_batch_size=settings.MEMORY_MIN_BATCH_SIZE,
            max_batch_size=settings.MEMORY_MAX_BATCH_SIZE,
            history_size=settings.MEMORY_HISTORY_SIZE,
        )
        if settings.MEMORY_LIMIT_MB > 0:
            kwargs["limit_bytes"] = settings.MEMORY_LIMIT_MB * 1024 * 1024
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def limit_bytes(self) -> int:
        if self._limit_bytes is None:
            self._limit_bytes = detect_memory_limit()
        return self._limit_bytes

    def sample(self) -> MemorySample:
        if self._sampler is not None:
            used, limit = self._sampler()
        else:
            used, limit = _process_rss(), self.limit_bytes
        sample = MemorySample(used_bytes=int(used), limit_bytes=int(limit), sampled_at=self._clock())
        self._history.append(sample)
        self._peak_bytes = max(self._peak_bytes, sample.used_bytes)
        return sample

    def initial_plan(self, requested_limit: Optional[int] = None) -> BatchPlan:
        """Plan for the first page of a run."""
        max_size = self.max_batch_size
        if requested_limit is not None:
            max_size = max(1, min(max_size, requested_limit))
        min_size = min(self.min_batch_size, max_size)
        return BatchPlan(current_size=max_size, min_size=min_size, max_size=max_size)

    def plan_next_batch(
        self,
        plan: BatchPlan,
        sample: Optional[MemorySample] = None,
        requested_limit: Optional[int] = None,
        threshold_percent: Optional[float] = None,
    ) -> BatchPlan:
        """Size for the next page, from the usage observed after the current one."""
        sample = sample or self.sample()
        usage = sample.usage_percent
        threshold = self.threshold_percent if threshold_percent is None else threshold_percent

        if usage > threshold:
            new_plan = plan.resized(max(plan.min_size, plan.current_size // 2))
            if new_plan.current_size != plan.current_size:
                logger.warning(
                    "batch_size_reduced",
                    usage_percent=round(usage, 1),
                    threshold_percent=threshold,
                    old_size=plan.current_size,
                    new_size=new_plan.current_size,
                )
            return new_plan

        if usage < threshold - self.headroom_percent:
            ceiling = plan.max_size if requested_limit is None else min(plan.max_size, requested_limit)
            grown = max(plan.current_size + 1, int(plan.current_size * self.growth_factor))
            target = min(ceiling, grown)
            if target > plan.current_size:
                logger.debug("batch_size_increased", old_size=plan.current_size, new_size=target)
                return plan.resized(target)

        return plan

    def alert_level(self, sample: Optional[MemorySample] = None) -> ThresholdStatus:
        """Alert level of a sample: "ok", "warning" or "critical"."""
        sample = sample or self.sample()
        return check_threshold(sample.usage_percent, self.levels)

    def check_critical(self, sample: Optional[MemorySample] = None, batch_size: Optional[int] = None) -> None:
        """Raise MemoryCriticalError when usage reached the critical level."""
        sample = sample or self.sample()
        if self.alert_level(sample) == "critical":
            logger.error(
                "memory_critical",
                usage_percent=round(sample.usage_percent, 1),
                used=format_bytes(sample.used_bytes),
                limit=format_bytes(sample.limit_bytes),
                batch_size=batch_size,
            )
            raise MemoryCriticalError(sample.usage_percent, self.levels.critical, batch_size)

    def should_force_gc(self, page: int, sample: Optional[MemorySample] = None) -> bool:
        """True at most once per page, when usage is at or above the alert level."""
        if self._gc_page == page:
            return False
        sample = sample or self.sample()
        if sample.usage_percent < self.levels.warning:
            return False
        self._gc_page = page
        return True

    def force_gc(self) -> Dict[str, Any]:
        before = self.sample() if self._sampler is None else None
        collected = gc.collect()
        self._gc_runs += 1
        result: Dict[str, Any] = {"collected_objects": collected}
        if before is not None:
            after = self.sample()
            result["freed"] = format_bytes(max(0, before.used_bytes - after.used_bytes))
        logger.info("forced_garbage_collection", **result)
        return result

    def stats(self) -> Dict[str, Any]:
        """Current usage plus recent history, for the operator surface."""
        current = self.sample()
        recent = list(self._history)
        return {
            "current_usage": current.used_bytes,
            "current_usage_formatted": format_bytes(current.used_bytes),
            "peak_usage": self._peak_bytes,
            "peak_usage_formatted": format_bytes(self._peak_bytes),
            "memory_limit": current.limit_bytes,
            "memory_limit_formatted": format_bytes(current.limit_bytes),
            "usage_percentage": round(current.usage_percent, 2),
            "alert_level": check_threshold(current.usage_percent, self.levels),
            "threshold_percent": self.threshold_percent,
            "alert_percent": self.levels.warning,
            "critical_percent": self.levels.critical,
            "min_batch_size": self.min_batch_size,
            "max_batch_size": self.max_batch_size,
            "gc_runs": self._gc_runs,
            "samples": len(recent),
            "average_usage_percentage": round(
                sum(s.usage_percent for s in recent) / len(recent), 2
            ) if recent else 0.0,
        }

    def reset(self) -> None:
        self._history.clear()
        self._peak_bytes = 0
        self._gc_page = None
        self._gc_runs = 0
