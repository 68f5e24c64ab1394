"""
Tests for the upstream health probe.

Tests cover:
1. HEALTHY / DEGRADED / UNHEALTHY verdicts
2. Recovery after a single fast success
3. Cached verdict and check interval
4. Disabled probe
"""

import pytest
from unittest.mock import MagicMock

from crmsync.core.health_probe import HealthProbe, HealthStatus


class SteppingTimer:
    """perf_counter stand-in: each ping takes `latency` seconds."""

    def __init__(self, latency=0.05):
        self.latency = latency
        self.now = 0.0
        self._started = False

    def __call__(self):
        if self._started:
            self.now += self.latency
        self._started = not self._started
        return self.now


@pytest.fixture
def ping():
    return MagicMock(return_value={"ok": True})


@pytest.fixture
def step_timer():
    return SteppingTimer()


@pytest.fixture
def probe(ping, clock, step_timer):
    return HealthProbe(
        ping,
        failure_threshold=3,
        degradation_threshold_ms=1000,
        cache_ttl=60,
        check_interval=300,
        clock=clock,
        timer=step_timer,
    )


class TestVerdicts:
    """Health verdicts from check history."""

    def test_first_status_checks_the_api(self, probe, ping):
        assert probe.status() == HealthStatus.HEALTHY
        ping.assert_called_once()

    def test_records_latency(self, probe):
        record = probe.check()

        assert record.success is True
        assert record.latency_ms == pytest.approx(50.0)

    def test_unhealthy_after_consecutive_failures(self, probe, ping, clock):
        ping.side_effect = ConnectionError("refused")
        for _ in range(3):
            probe.check()

        assert probe.consecutive_failures == 3
        assert probe.status() == HealthStatus.UNHEALTHY
        assert probe.is_healthy() is False

    def test_two_failures_are_still_healthy(self, probe, ping):
        ping.side_effect = ConnectionError("refused")
        probe.check()
        probe.check()

        assert probe.status() == HealthStatus.HEALTHY

    def test_degraded_on_slow_responses(self, probe, step_timer):
        step_timer.latency = 1.5
        probe.check()

        assert probe.status() == HealthStatus.DEGRADED
        assert probe.is_healthy() is True

    def test_single_fast_success_recovers(self, probe, ping, step_timer):
        step_timer.latency = 3.0
        probe.check()
        ping.side_effect = ConnectionError("refused")
        for _ in range(3):
            probe.check()
        assert probe.status() == HealthStatus.UNHEALTHY

        # The slow check before the outage no longer counts
        ping.side_effect = None
        step_timer.latency = 0.01
        probe.check()

        assert probe.consecutive_failures == 0
        assert probe.status() == HealthStatus.HEALTHY

    def test_failed_check_records_error(self, probe, ping):
        ping.side_effect = ConnectionError("refused")
        record = probe.check()

        assert record.success is False
        assert "ConnectionError" in record.error


class TestCaching:
    """Cached verdict and check interval."""

    def test_verdict_is_cached(self, probe, ping):
        assert probe.status() == HealthStatus.HEALTHY
        ping.side_effect = ConnectionError("refused")

        assert probe.status() == HealthStatus.HEALTHY
        ping.assert_called_once()

    def test_new_check_invalidates_cache(self, probe, ping):
        probe.status()
        ping.side_effect = ConnectionError("refused")
        for _ in range(3):
            probe.check()

        assert probe.status() == HealthStatus.UNHEALTHY

    def test_should_check_after_interval(self, probe, clock):
        assert probe.should_check() is True
        probe.check()
        assert probe.should_check() is False

        clock.advance(300)
        assert probe.should_check() is True


class TestDisabled:
    """A disabled probe never calls the API."""

    def test_disabled_is_healthy(self, ping, clock):
        probe = HealthProbe(ping, enabled=False, clock=clock)

        assert probe.status() == HealthStatus.HEALTHY
        assert probe.should_check() is False
        ping.assert_not_called()


class TestStats:
    """History summary."""

    def test_stats_never_call_the_api(self, probe, ping):
        stats = probe.stats()

        assert stats["total_checks"] == 0
        assert stats["status"] is None
        ping.assert_not_called()

    def test_stats_summarize_history(self, probe, ping):
        probe.check()
        ping.side_effect = ConnectionError("refused")
        probe.check()

        stats = probe.stats()
        assert stats["total_checks"] == 2
        assert stats["success_rate"] == 50.0
        assert stats["consecutive_failures"] == 1
        assert stats["last_check"]["success"] is False

    def test_reset(self, probe):
        probe.check()
        probe.reset()
        assert probe.stats()["total_checks"] == 0
