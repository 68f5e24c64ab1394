from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional
import logging

from crmsync.core.exceptions import CircuitOpenError
from crmsync.core.typing import utc_now

logger = logging.getLogger(__name__)

# Type alias for notification callback - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)

# Global notification callback - set by application on startup
_notification_callback: Optional[StateChangeCallback] = None

DEFAULT_OPERATIONS = ("sync", "webhook")

# CAS attempts before giving up on a contended transition
_MAX_CAS_ATTEMPTS = 5


def set_notification_callback(callback: Optional[StateChangeCallback]) -> None:
    """Set the global notification callback for circuit breaker state changes."""
    global _notification_callback
    _notification_callback = callback


def _notify_state_change(name: str, old_state: str, new_state: str) -> None:
    """Notify about state change if callback is registered."""
    if _notification_callback:
        try:
            _notification_callback(name, old_state, new_state)
        except Exception as e:
            logger.error(f"Circuit breaker notification failed: {e}")


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # One trial call allowed


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class CircuitBreaker:
    """
    Circuit breaker for one operation kind ("sync", "webhook", ...).

    State lives in the shared counter store, not on this object, so every
    worker sees the same circuit:

        circuit:{name}           -> {"state", "opened_at", "trial_at"}
        circuit:{name}:failures  -> consecutive failure counter

    The failure streak is an atomic increment; state transitions are
    compare-and-set on the state record, which is how exactly one caller
    wins the HALF_OPEN trial after the recovery timeout.
    """

    name: str
    store: Any  # CounterStore
    failure_threshold: int = 5
    recovery_timeout: float = 300.0  # seconds
    clock: Callable[[], datetime] = field(default=utc_now)

    @property
    def _state_key(self) -> str:
        return f"circuit:{self.name}"

    @property
    def _failures_key(self) -> str:
        return f"circuit:{self.name}:failures"

    def _read(self) -> tuple[Optional[dict], dict]:
        raw = self.store.get(self._state_key)
        record = dict(raw) if raw else {"state": CircuitState.CLOSED.value, "opened_at": None, "trial_at": None}
        return raw, record

    def _cooled_down(self, since: Optional[str]) -> bool:
        started = _parse_time(since)
        if started is None:
            return True
        return (self.clock() - started).total_seconds() >= self.recovery_timeout

    def _transition(self, raw: Optional[dict], new: dict, old_state: str, reason: str) -> bool:
        if not self.store.compare_and_set(self._state_key, raw, new):
            return False
        if old_state != new["state"]:
            message = f"Circuit {self.name}: {old_state.upper()} -> {new['state'].upper()} ({reason})"
            if new["state"] == CircuitState.OPEN.value:
                logger.warning(message)
            else:
                logger.info(message)
            _notify_state_change(self.name, old_state, new["state"])
        return True

    @property
    def state(self) -> CircuitState:
        """Effective state. An OPEN circuit past its timeout reports HALF_OPEN."""
        _, record = self._read()
        state = CircuitState(record["state"])
        if state == CircuitState.OPEN and self._cooled_down(record.get("opened_at")):
            return CircuitState.HALF_OPEN
        return state

    @property
    def consecutive_failures(self) -> int:
        return self.store.get_count(self._failures_key)

    def is_open(self) -> bool:
        """True while calls would be rejected (OPEN, or HALF_OPEN with its trial taken)."""
        _, record = self._read()
        state = CircuitState(record["state"])
        if state == CircuitState.CLOSED:
            return False
        if state == CircuitState.OPEN:
            return not self._cooled_down(record.get("opened_at"))
        return record.get("trial_at") is not None and not self._cooled_down(record.get("trial_at"))

    def retry_after(self) -> float:
        """Seconds until the circuit admits a trial call (0 when closed)."""
        _, record = self._read()
        if record["state"] == CircuitState.CLOSED.value:
            return 0.0
        since = _parse_time(record.get("trial_at") or record.get("opened_at"))
        if since is None:
            return 0.0
        elapsed = (self.clock() - since).total_seconds()
        return max(0.0, self.recovery_timeout - elapsed)

    def record_success(self) -> None:
        self.store.set_count(self._failures_key, 0)
        for _ in range(_MAX_CAS_ATTEMPTS):
            raw, record = self._read()
            if record["state"] == CircuitState.CLOSED.value:
                return
            closed = {"state": CircuitState.CLOSED.value, "opened_at": None, "trial_at": None}
            if self._transition(raw, closed, record["state"], "success"):
                return

    def record_failure(self) -> CircuitState:
        failures = self.store.increment(self._failures_key)
        for _ in range(_MAX_CAS_ATTEMPTS):
            raw, record = self._read()
            state = record["state"]
            reopened = {"state": CircuitState.OPEN.value, "opened_at": self.clock().isoformat(), "trial_at": None}

            if state == CircuitState.HALF_OPEN.value:
                if self._transition(raw, reopened, state, "failure during recovery"):
                    return CircuitState.OPEN
            elif state == CircuitState.CLOSED.value and failures >= self.failure_threshold:
                if self._transition(raw, reopened, state, f"{failures} consecutive failures"):
                    return CircuitState.OPEN
            elif state == CircuitState.OPEN.value and self._cooled_down(record.get("opened_at")):
                # Failure reported after cooldown (e.g. the trial call itself): restart timeout
                if self._transition(raw, reopened, state, "failure after cooldown"):
                    return CircuitState.OPEN
            else:
                return CircuitState(state)
        return self.state

    def allow_request(self) -> bool:
        for _ in range(_MAX_CAS_ATTEMPTS):
            raw, record = self._read()
            state = record["state"]

            if state == CircuitState.CLOSED.value:
                return True

            if state == CircuitState.OPEN.value:
                if not self._cooled_down(record.get("opened_at")):
                    return False
                trial = {**record, "state": CircuitState.HALF_OPEN.value, "trial_at": self.clock().isoformat()}
                if self._transition(raw, trial, state, "recovery timeout elapsed"):
                    return True
                continue

            # HALF_OPEN: one trial at a time; a trial that never reported back expires
            if record.get("trial_at") and not self._cooled_down(record.get("trial_at")):
                return False
            trial = {**record, "trial_at": self.clock().isoformat()}
            if self._transition(raw, trial, state, "trial claimed"):
                return True
        return False

    def check(self) -> None:
        """Raise CircuitOpenError unless a call is allowed now."""
        if not self.allow_request():
            raise CircuitOpenError(self.name, self.retry_after())

    def reset(self) -> None:
        old_state = self.state.value
        self.store.delete(self._state_key)
        self.store.delete(self._failures_key)
        logger.info(f"Circuit {self.name}: reset by operator")
        if old_state != CircuitState.CLOSED.value:
            _notify_state_change(self.name, old_state, CircuitState.CLOSED.value)

    def get_status(self) -> Dict[str, Any]:
        _, record = self._read()
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "opened_at": record.get("opened_at"),
            "retry_after": round(self.retry_after(), 1),
        }


class CircuitBreakerRegistry:
    """Per-operation breakers sharing one store and one policy."""

    def __init__(
        self,
        store: Any,
        failure_threshold: int = 5,
        recovery_timeout: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
        operations: Iterable[str] = DEFAULT_OPERATIONS,
    ):
        self.store = store
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        for name in operations:
            self.get(name)

    def get(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name=name,
                store=self.store,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                clock=self.clock,
            )
        return self._breakers[name]

    def get_all_states(self) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in self._breakers.items()}

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: cb.get_status() for name, cb in self._breakers.items()}

    def reset(self, name: Optional[str] = None) -> None:
        targets = [self.get(name)] if name else list(self._breakers.values())
        for breaker in targets:
            breaker.reset()
