"""
Tests for circuit breaker functionality.

Tests cover:
1. State transitions (CLOSED -> OPEN -> HALF_OPEN -> CLOSED)
2. Core methods (record_success, record_failure, allow_request, check)
3. Exactly one trial call after the recovery timeout
4. State shared through the counter store
5. CircuitBreakerRegistry and the notification callback
"""

import pytest
from unittest.mock import MagicMock

from crmsync.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    set_notification_callback,
)
from crmsync.core.exceptions import CircuitOpenError


@pytest.fixture
def breaker(memory_store, clock):
    return CircuitBreaker(name="sync", store=memory_store, failure_threshold=3, recovery_timeout=60, clock=clock)


def trip(breaker, times=None):
    for _ in range(times or breaker.failure_threshold):
        breaker.record_failure()


class TestCircuitState:
    """Tests for CircuitState enum."""

    def test_circuit_states_exist(self):
        """Verify all expected circuit states are defined."""
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"


class TestStateTransitions:
    """Tests for circuit breaker state transitions."""

    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request() is True

    def test_stays_closed_below_threshold(self, breaker):
        trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 2

    def test_opens_at_threshold(self, breaker):
        trip(breaker)

        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open() is True
        assert breaker.allow_request() is False

    def test_success_resets_failure_streak(self, breaker):
        trip(breaker, 2)
        breaker.record_success()
        trip(breaker, 2)

        assert breaker.state == CircuitState.CLOSED

    def test_reports_half_open_after_timeout(self, breaker, clock):
        trip(breaker)
        clock.advance(61)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.is_open() is False

    def test_trial_success_closes(self, breaker, clock):
        trip(breaker)
        clock.advance(61)

        assert breaker.allow_request() is True
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_trial_failure_reopens(self, breaker, clock):
        trip(breaker)
        clock.advance(61)

        assert breaker.allow_request() is True
        assert breaker.record_failure() == CircuitState.OPEN
        assert breaker.allow_request() is False
        assert breaker.retry_after() == pytest.approx(60)


class TestHalfOpenTrial:
    """Only one caller wins the trial after the recovery timeout."""

    def test_single_trial(self, breaker, clock):
        trip(breaker)
        clock.advance(61)

        assert breaker.allow_request() is True
        assert breaker.allow_request() is False
        assert breaker.is_open() is True

    def test_second_breaker_on_same_store_sees_trial_taken(self, breaker, memory_store, clock):
        other = CircuitBreaker(name="sync", store=memory_store, failure_threshold=3, recovery_timeout=60, clock=clock)
        trip(breaker)
        clock.advance(61)

        assert breaker.allow_request() is True
        assert other.allow_request() is False

    def test_abandoned_trial_expires(self, breaker, clock):
        trip(breaker)
        clock.advance(61)
        breaker.allow_request()

        clock.advance(61)
        assert breaker.allow_request() is True


class TestCheck:
    """Tests for check() and retry_after()."""

    def test_check_raises_when_open(self, breaker, clock):
        trip(breaker)
        clock.advance(20)

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.check()

        assert exc_info.value.operation == "sync"
        assert exc_info.value.retry_after == pytest.approx(40)

    def test_closed_retry_after_is_zero(self, breaker):
        assert breaker.retry_after() == 0.0
        breaker.check()


class TestSharedState:
    """State lives in the store, not on the breaker object."""

    def test_state_visible_to_new_instance(self, sql_store, clock):
        first = CircuitBreaker(name="webhook", store=sql_store, failure_threshold=2, clock=clock)
        trip(first)

        second = CircuitBreaker(name="webhook", store=sql_store, failure_threshold=2, clock=clock)
        assert second.state == CircuitState.OPEN
        assert second.consecutive_failures == 2

    def test_reset(self, breaker):
        trip(breaker)
        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_status(self, breaker):
        trip(breaker)
        status = breaker.get_status()

        assert status["name"] == "sync"
        assert status["state"] == "open"
        assert status["consecutive_failures"] == 3
        assert status["opened_at"] is not None


class TestRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_default_operations(self, memory_store):
        registry = CircuitBreakerRegistry(memory_store)
        assert set(registry.get_all_states()) == {"sync", "webhook"}

    def test_get_returns_same_breaker(self, memory_store):
        registry = CircuitBreakerRegistry(memory_store)
        assert registry.get("sync") is registry.get("sync")

    def test_operations_are_independent(self, memory_store, clock):
        registry = CircuitBreakerRegistry(memory_store, failure_threshold=1, clock=clock)
        registry.get("sync").record_failure()

        states = registry.get_all_states()
        assert states["sync"] == "open"
        assert states["webhook"] == "closed"

    def test_reset_all(self, memory_store, clock):
        registry = CircuitBreakerRegistry(memory_store, failure_threshold=1, clock=clock)
        registry.get("sync").record_failure()
        registry.get("webhook").record_failure()

        registry.reset()

        assert set(registry.get_all_states().values()) == {"closed"}


class TestNotificationCallback:
    """State changes are reported to the registered callback."""

    def test_open_and_close_are_notified(self, breaker, clock):
        callback = MagicMock()
        set_notification_callback(callback)

        trip(breaker)
        clock.advance(61)
        breaker.allow_request()
        breaker.record_success()

        transitions = [c.args for c in callback.call_args_list]
        assert ("sync", "closed", "open") in transitions
        assert ("sync", "open", "half_open") in transitions
        assert ("sync", "half_open", "closed") in transitions

    def test_callback_errors_are_swallowed(self, breaker):
        set_notification_callback(MagicMock(side_effect=RuntimeError("boom")))
        trip(breaker)
        assert breaker.state == CircuitState.OPEN
