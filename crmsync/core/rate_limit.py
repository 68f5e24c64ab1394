"""
Daily token budget per endpoint class.

The CRM meters requests in weighted tokens per day. Each endpoint class
("deals", "files", ...) has its own daily limit and a per-request cost;
consumption is recorded in the shared counter store with a single
conditional increment, so concurrent workers can never overspend.

The limiter never sleeps. When the budget is gone it raises
RateLimitedError carrying the recommended wait; the caller blocks or
reschedules.

Usage:
    limiter = RateLimiter(store, daily_budget=10000, token_costs={"files": 2})
    limiter.consume("deals")                # raises RateLimitedError when exhausted
    limiter.apply_response_headers("deals", response.headers)
    delay = limiter.wait_duration(attempt=2)
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from crmsync.core.entities import ENTITY_TYPES, normalize_entity_type
from crmsync.core.exceptions import RateLimitedError
from crmsync.core.logging_config import get_logger
from crmsync.core.typing import utc_now

logger = get_logger(__name__)

__all__ = ["RateBudget", "RateLimiter"]

# x-ratelimit-reset values above this are epoch timestamps, below are "seconds from now"
_EPOCH_CUTOFF = 1_000_000_000


@dataclass(frozen=True)
class RateBudget:
    """Snapshot of one endpoint class's daily budget."""

    endpoint_class: str
    daily_limit: int
    consumed_today: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.daily_limit - self.consumed_today)

    @property
    def usage_percentage(self) -> float:
        if self.daily_limit <= 0:
            return 100.0
        return round(self.consumed_today / self.daily_limit * 100, 2)


class RateLimiter:
    """Token budget accounting over a CounterStore."""

    def __init__(
        self,
        store: Any,
        daily_budget: int = 10000,
        endpoint_budgets: Optional[Mapping[str, int]] = None,
        token_costs: Optional[Mapping[str, int]] = None,
        base_delay: float = 1.0,
        max_delay: float = 16.0,
        jitter: bool = True,
        jitter_fraction: float = 0.2,
        approaching_percent: float = 80.0,
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
        rng: Callable[[float, float], float] = random.uniform,
    ):
        self.store = store
        self.daily_budget = daily_budget
        self.endpoint_budgets = dict(endpoint_budgets or {})
        self.token_costs = dict(token_costs or {})
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.jitter_fraction = jitter_fraction
        self.approaching_percent = approaching_percent
        self.enabled = enabled
        self._clock = clock
        self._rng = rng

    @classmethod
    def from_settings(cls, store: Any, settings: Any, **overrides: Any) -> "RateLimiter":
        kwargs = dict(
            daily_budget=settings.RATE_LIMIT_DAILY_BUDGET,
            endpoint_budgets=settings.RATE_LIMIT_ENDPOINT_BUDGETS,
            token_costs=settings.RATE_LIMIT_TOKEN_COSTS,
            base_delay=settings.RATE_LIMIT_BASE_DELAY,
            max_delay=settings.RATE_LIMIT_MAX_DELAY,
            jitter=settings.RATE_LIMIT_JITTER,
            jitter_fraction=settings.RATE_LIMIT_JITTER_FRACTION,
            approaching_percent=settings.RATE_LIMIT_APPROACHING_PERCENT,
            enabled=settings.RATE_LIMIT_ENABLED,
        )
        kwargs.update(overrides)
        return cls(store, **kwargs)

    # ------------------------------------------------------------------
    # Endpoint classes and costs
    # ------------------------------------------------------------------

    def endpoint_class(self, endpoint: str) -> str:
        """
        Endpoint class for an API path or class name.

        "/v1/deals/42?fields=x" -> "deals", "person" -> "persons".
        """
        path = endpoint.split("?", 1)[0].strip("/")
        segments = [s for s in path.split("/") if s]
        while segments and segments[0].lower() in ("api", "v1", "v2"):
            segments = segments[1:]
        return normalize_entity_type(segments[0]) if segments else "unknown"

    def token_cost(self, endpoint: str) -> int:
        return int(self.token_costs.get(self.endpoint_class(endpoint), 1))

    def _key(self, endpoint_class: str) -> str:
        return f"rate_budget:{endpoint_class}"

    def _limit_key(self, endpoint_class: str) -> str:
        return f"rate_budget:{endpoint_class}:limit"

    def _seconds_until_midnight(self) -> float:
        now = self._clock()
        tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return max(1.0, (tomorrow - now).total_seconds())

    def _window_ttl(self, endpoint_class: str) -> float:
        """Seconds left in the current budget window."""
        ttl = self.store.time_to_live(self._key(endpoint_class))
        return ttl if ttl is not None else self._seconds_until_midnight()

    def daily_limit(self, endpoint_class: str) -> int:
        cls = self.endpoint_class(endpoint_class)
        declared = self.store.get(self._limit_key(cls))
        if declared is not None:
            return int(declared)
        return int(self.endpoint_budgets.get(cls, self.daily_budget))

    def budget(self, endpoint_class: str) -> RateBudget:
        cls = self.endpoint_class(endpoint_class)
        return RateBudget(
            endpoint_class=cls,
            daily_limit=self.daily_limit(cls),
            consumed_today=self.store.get_count(self._key(cls)),
            reset_at=self._clock() + timedelta(seconds=self._window_ttl(cls)),
        )

    # ------------------------------------------------------------------
    # Budget checks
    # ------------------------------------------------------------------

    def can_consume(self, endpoint_class: str, cost: Optional[int] = None) -> bool:
        if not self.enabled:
            return True
        cls = self.endpoint_class(endpoint_class)
        cost = cost if cost is not None else self.token_cost(cls)
        return self.budget(cls).remaining >= cost

    def consume(self, endpoint_class: str, cost: Optional[int] = None) -> Optional[RateBudget]:
        """
        Spend tokens for one request.

        Raises:
            RateLimitedError: when the spend would exceed the daily limit
        """
        if not self.enabled:
            return None

        cls = self.endpoint_class(endpoint_class)
        cost = cost if cost is not None else self.token_cost(cls)
        limit = self.daily_limit(cls)

        consumed = self.store.increment_if_within(
            self._key(cls), cost, limit, ttl=self._seconds_until_midnight()
        )
        if consumed is None:
            budget = self.budget(cls)
            retry_after = self._window_ttl(cls)
            logger.warning(
                "rate_budget_exhausted",
                endpoint_class=cls,
                token_cost=cost,
                consumed=budget.consumed_today,
                daily_limit=limit,
                retry_after=round(retry_after, 1),
            )
            raise RateLimitedError(cls, retry_after, remaining=budget.remaining, limit=limit)

        if consumed >= limit * self.approaching_percent / 100 and consumed - cost < limit * self.approaching_percent / 100:
            logger.warning("rate_budget_approaching_limit", endpoint_class=cls, consumed=consumed, daily_limit=limit)

        return RateBudget(
            endpoint_class=cls,
            daily_limit=limit,
            consumed_today=consumed,
            reset_at=self._clock() + timedelta(seconds=self._window_ttl(cls)),
        )

    def wait_duration(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Seconds to wait before retry number `attempt` (1-based).

        A provider-advertised retry-after wins; otherwise exponential
        min(max_delay, base * 2^(attempt-1)), jittered by +/- jitter_fraction.
        """
        if retry_after is not None and retry_after > 0:
            return float(retry_after)

        delay = min(self.max_delay, self.base_delay * 2 ** max(attempt - 1, 0))
        if self.jitter and self.jitter_fraction > 0:
            delay *= self._rng(1 - self.jitter_fraction, 1 + self.jitter_fraction)
        return max(0.0, delay)

    # ------------------------------------------------------------------
    # Provider feedback
    # ------------------------------------------------------------------

    def _reset_in(self, raw: Optional[str]) -> Optional[float]:
        if raw is None:
            return None
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None
        if value > _EPOCH_CUTOFF:
            value = value - self._clock().timestamp()
        return max(1.0, value)

    def apply_response_headers(self, endpoint_class: str, headers: Optional[Mapping[str, Any]]) -> Optional[float]:
        """
        Let the provider's rate-limit headers override local estimates.

        Returns the advertised retry-after in seconds, if any.
        """
        if not headers:
            return None

        lowered = {str(k).lower(): v for k, v in headers.items()}
        cls = self.endpoint_class(endpoint_class)

        def _int(name: str) -> Optional[int]:
            try:
                return int(float(lowered[name]))
            except (KeyError, TypeError, ValueError):
                return None

        used = _int("x-ratelimit-used")
        limit = _int("x-ratelimit-limit")
        remaining = _int("x-ratelimit-remaining")
        reset_in = self._reset_in(lowered.get("x-ratelimit-reset"))
        ttl = reset_in if reset_in is not None else self._window_ttl(cls)

        if limit is not None and limit > 0:
            self.store.set_with_ttl(self._limit_key(cls), limit, ttl=ttl)

        consumed = None
        if used is not None:
            consumed = used
        elif remaining is not None and limit is not None:
            consumed = max(0, limit - remaining)

        if consumed is not None:
            self.store.set_count(self._key(cls), consumed, ttl=ttl)
            logger.debug("rate_budget_synced", endpoint_class=cls, consumed=consumed, daily_limit=limit, reset_in=ttl)

        retry_after = lowered.get("retry-after")
        if retry_after is None:
            return None
        try:
            return max(0.0, float(retry_after))
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def endpoint_status(self, endpoint_class: str) -> Dict[str, Any]:
        budget = self.budget(endpoint_class)
        return {
            "endpoint_class": budget.endpoint_class,
            "current_usage": budget.consumed_today,
            "daily_budget": budget.daily_limit,
            "remaining_tokens": budget.remaining,
            "usage_percentage": budget.usage_percentage,
            "is_approaching_limit": budget.usage_percentage > self.approaching_percent,
            "is_limit_exceeded": budget.consumed_today >= budget.daily_limit,
            "time_until_reset": int((budget.reset_at - self._clock()).total_seconds()),
            "reset_time": budget.reset_at.astimezone(timezone.utc).isoformat(),
        }

    def status(self, endpoint_class: Optional[str] = None) -> Dict[str, Any]:
        """Budget status for one class, or for every known entity type."""
        if endpoint_class:
            return {"enabled": self.enabled, **self.endpoint_status(endpoint_class)}

        classes = sorted(set(ENTITY_TYPES) | set(self.endpoint_budgets))
        endpoints = {cls: self.endpoint_status(cls) for cls in classes}
        return {
            "enabled": self.enabled,
            "daily_budget": self.daily_budget,
            "token_costs": self.token_costs,
            "endpoints": endpoints,
            "any_exceeded": any(s["is_limit_exceeded"] for s in endpoints.values()),
        }

    def reset(self, endpoint_class: Optional[str] = None) -> None:
        if endpoint_class:
            cls = self.endpoint_class(endpoint_class)
            self.store.delete(self._key(cls))
            self.store.delete(self._limit_key(cls))
        else:
            self.store.delete_prefix("rate_budget:")
        logger.info("rate_budget_reset", endpoint_class=endpoint_class or "all")
