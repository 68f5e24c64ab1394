"""
Centralized alert thresholds for the operator health report.

All thresholds are tunable via environment variables.

Usage:
    from crmsync.core.health_thresholds import HealthThresholds, check_threshold

    status = check_threshold(
        value=usage_percentage,
        threshold=HealthThresholds.RATE_BUDGET_USAGE,
    )
    # Returns: "ok", "warning", or "critical"
"""

from dataclasses import dataclass
from typing import Literal
import os

__all__ = [
    "Threshold",
    "HealthThresholds",
    "check_threshold",
    "worst_status",
    "ThresholdStatus",
]

ThresholdStatus = Literal["ok", "warning", "critical"]

_SEVERITY = {"ok": 0, "warning": 1, "critical": 2}


@dataclass(frozen=True)
class Threshold:
    """A metric limit; values at or above `warning` degrade, at or above `critical` fail."""

    warning: float
    critical: float
    unit: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.name or 'threshold'}: warn={self.warning}{self.unit}, crit={self.critical}{self.unit}"


def check_threshold(value: float, threshold: Threshold) -> ThresholdStatus:
    """Map a metric onto ok / warning / critical (both bounds inclusive)."""
    if value >= threshold.critical:
        return "critical"
    if value >= threshold.warning:
        return "warning"
    return "ok"


def worst_status(*statuses: ThresholdStatus) -> ThresholdStatus:
    """Most severe of several statuses ("ok" when none given)."""
    return max(statuses, key=lambda s: _SEVERITY[s], default="ok")


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


class HealthThresholds:
    """
    Thresholds used by crmsync.core.health_check.

    Override via environment variables, e.g.:
        THRESHOLD_RATE_BUDGET_WARN=70
        THRESHOLD_RATE_BUDGET_CRIT=95
    """

    RATE_BUDGET_USAGE = Threshold(
        warning=_env_float("THRESHOLD_RATE_BUDGET_WARN", 80.0),
        critical=_env_float("THRESHOLD_RATE_BUDGET_CRIT", 100.0),
        unit="%",
        name="rate_budget_usage",
    )
    """Daily token budget usage: 80% warn, exhausted critical"""

    UPSTREAM_LATENCY_MS = Threshold(
        warning=_env_float("THRESHOLD_UPSTREAM_LATENCY_WARN", 1000.0),
        critical=_env_float("THRESHOLD_UPSTREAM_LATENCY_CRIT", 5000.0),
        unit="ms",
        name="upstream_latency",
    )
    """Average probe latency: 1s warn, 5s critical"""

    CIRCUIT_OPEN_DURATION_MIN = Threshold(
        warning=_env_float("THRESHOLD_CIRCUIT_OPEN_WARN", 5.0),
        critical=_env_float("THRESHOLD_CIRCUIT_OPEN_CRIT", 30.0),
        unit="minutes",
        name="circuit_open_duration",
    )
    """Circuit open duration: 5m warn, 30m critical"""

    QUEUE_DEPTH = Threshold(
        warning=_env_float("THRESHOLD_QUEUE_DEPTH_WARN", 500),
        critical=_env_float("THRESHOLD_QUEUE_DEPTH_CRIT", 1000),
        unit="tasks",
        name="queue_depth",
    )
    """Pending task count: 500 warn, 1000 critical"""

    QUEUE_DEAD_LETTER = Threshold(
        warning=_env_float("THRESHOLD_QUEUE_DL_WARN", 10),
        critical=_env_float("THRESHOLD_QUEUE_DL_CRIT", 50),
        unit="tasks",
        name="queue_dead_letter",
    )
    """Dead letter count: 10 warn, 50 critical"""

    @classmethod
    def get_all(cls) -> dict[str, Threshold]:
        return {
            name: value
            for name, value in vars(cls).items()
            if isinstance(value, Threshold)
        }
