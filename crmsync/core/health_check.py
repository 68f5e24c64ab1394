"""
Unified health report for operators.

Aggregates every resilience component with threshold-based alerting.

Usage:
    from crmsync.core.health_check import HealthCheck

    report = HealthCheck(services).check_overall_health()
    # Returns: {"status": "ok", "components": {...}}

Each component check returns:
    - status: "ok", "warning", or "critical"
    - Additional context for debugging
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlmodel import Session

from crmsync.core.health_thresholds import HealthThresholds, ThresholdStatus, check_threshold, worst_status

logger = structlog.get_logger(__name__)

__all__ = ["HealthCheck", "ThresholdStatus"]


class HealthCheck:
    def __init__(self, services: Any):
        self.services = services

    def check_rate_budget_health(self) -> Dict[str, Any]:
        """Highest daily budget usage across endpoint classes."""
        try:
            status = self.services.rate_limiter.status()
            endpoints = status["endpoints"]
            busiest = max(endpoints.values(), key=lambda e: e["usage_percentage"], default=None)
            usage = busiest["usage_percentage"] if busiest else 0.0
            return {
                "status": check_threshold(usage, HealthThresholds.RATE_BUDGET_USAGE) if status["enabled"] else "ok",
                "enabled": status["enabled"],
                "max_usage_percentage": usage,
                "busiest_endpoint": busiest["endpoint_class"] if busiest else None,
                "exceeded": [name for name, e in endpoints.items() if e["is_limit_exceeded"]],
                "threshold_warn_pct": HealthThresholds.RATE_BUDGET_USAGE.warning,
            }
        except Exception as e:
            logger.error("rate_health_check_failed", error=str(e))
            return {"status": "warning", "reason": f"Health check error: {str(e)}"}

    def check_circuit_health(self) -> Dict[str, Any]:
        """Open circuits are critical once they stay open past the threshold."""
        try:
            circuits = self.services.classifier.circuit_status()
            now = datetime.now(timezone.utc)

            open_circuits = [n for n, s in circuits.items() if s["state"] == "open"]
            half_open_circuits = [n for n, s in circuits.items() if s["state"] == "half_open"]

            status: ThresholdStatus = "ok"
            for name in open_circuits:
                opened_at = circuits[name].get("opened_at")
                minutes = 0.0
                if opened_at:
                    minutes = (now - datetime.fromisoformat(opened_at)).total_seconds() / 60
                status = worst_status(
                    status, "warning", check_threshold(minutes, HealthThresholds.CIRCUIT_OPEN_DURATION_MIN)
                )
            if half_open_circuits:
                status = worst_status(status, "warning")

            return {
                "status": status,
                "open_circuits": open_circuits,
                "half_open_circuits": half_open_circuits,
                "total_circuits": len(circuits),
            }
        except Exception as e:
            logger.error("circuit_health_check_failed", error=str(e))
            return {"status": "warning", "reason": f"Health check error: {str(e)}"}

    def check_memory_health(self) -> Dict[str, Any]:
        try:
            stats = self.services.memory.stats()
            return {
                "status": stats["alert_level"],
                "usage_percentage": stats["usage_percentage"],
                "current_usage": stats["current_usage_formatted"],
                "memory_limit": stats["memory_limit_formatted"],
                "threshold_warn_pct": stats["alert_percent"],
                "threshold_crit_pct": stats["critical_percent"],
            }
        except Exception as e:
            logger.error("memory_health_check_failed", error=str(e))
            return {"status": "warning", "reason": f"Health check error: {str(e)}"}

    def check_upstream_health(self) -> Dict[str, Any]:
        """From probe history only; never calls the CRM."""
        try:
            stats = self.services.health.stats()
            if not stats["enabled"]:
                return {"status": "ok", "enabled": False}

            verdict = stats["status"]
            if verdict == "unhealthy":
                status: ThresholdStatus = "critical"
            elif verdict == "degraded":
                status = "warning"
            else:
                status = check_threshold(stats["avg_latency_ms"], HealthThresholds.UPSTREAM_LATENCY_MS)

            return {
                "status": status,
                "enabled": True,
                "verdict": verdict,
                "consecutive_failures": stats["consecutive_failures"],
                "avg_latency_ms": stats["avg_latency_ms"],
                "success_rate": stats["success_rate"],
            }
        except Exception as e:
            logger.error("upstream_health_check_failed", error=str(e))
            return {"status": "warning", "reason": f"Health check error: {str(e)}"}

    def check_queue_health(self, session: Optional[Session] = None) -> Dict[str, Any]:
        """Queue depth and dead-letter count."""
        from crmsync.services.task_queue import get_queue_stats

        try:
            if session is None:
                with Session(self.services.engine) as own_session:
                    depth = get_queue_stats(own_session)
            else:
                depth = get_queue_stats(session)

            pending = depth.get("pending", 0)
            dead_letter = depth.get("failed", 0)
            status = worst_status(
                check_threshold(pending, HealthThresholds.QUEUE_DEPTH),
                check_threshold(dead_letter, HealthThresholds.QUEUE_DEAD_LETTER),
            )
            return {
                "status": status,
                **depth,
                "threshold_depth_warn": int(HealthThresholds.QUEUE_DEPTH.warning),
                "threshold_dl_warn": int(HealthThresholds.QUEUE_DEAD_LETTER.warning),
            }
        except Exception as e:
            logger.error("queue_health_check_failed", error=str(e))
            return {"status": "warning", "reason": f"Health check error: {str(e)}"}

    def check_overall_health(self, session: Optional[Session] = None) -> Dict[str, Any]:
        """
        Aggregate health across all components.

        HTTP status should be:
        - 200 for "ok" and "warning"
        - 503 for "critical"
        """
        components = {
            "rate_budget": self.check_rate_budget_health(),
            "circuits": self.check_circuit_health(),
            "memory": self.check_memory_health(),
            "upstream": self.check_upstream_health(),
            "queue": self.check_queue_health(session),
        }
        return {
            "status": worst_status(*(c["status"] for c in components.values())),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": components,
        }
