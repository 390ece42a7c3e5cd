"""
Unit tests for the circuit breaker and its registry.

Time is driven by a fake clock so cooldowns can be crossed instantly.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from bytesteps_guard.core.audit import CIRCUIT_BREAKER_OPENED, AuditSink
from bytesteps_guard.core.circuit_breaker import (
    BreakerSettings,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from bytesteps_guard.core.exceptions import CircuitOpenError
from bytesteps_guard.storage.audit_log import InMemoryAuditStore


class Dependency:
    """Scriptable async operation that counts its invocations."""

    def __init__(self, fail: bool = True):
        self.fail = fail
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError("upstream down")
        return "ok"


async def _fail_times(breaker, dependency, times):
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call(dependency)


class TestCircuitBreaker:
    """Test state transitions of a single breaker."""

    async def test_opens_at_threshold_and_stops_calling(self, clock):
        """Test four failures keep it closed and the fifth opens it."""
        breaker = CircuitBreaker("llm-service", failure_threshold=5, recovery_timeout=60, clock=clock)
        dependency = Dependency()

        await _fail_times(breaker, dependency, 4)
        assert breaker.state == CircuitState.CLOSED

        await _fail_times(breaker, dependency, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.consecutive_failures == 5

        with pytest.raises(CircuitOpenError):
            await breaker.call(dependency)
        assert dependency.calls == 5

    async def test_open_rejection_reports_remaining_cooldown(self, clock):
        """Test the rejection message tells the caller how long to wait."""
        breaker = CircuitBreaker("llm-service", failure_threshold=3, recovery_timeout=60, clock=clock)
        dependency = Dependency()

        for t in (0.0, 1.0, 2.0):
            clock.set(t)
            await _fail_times(breaker, dependency, 1)
        assert breaker.state == CircuitState.OPEN

        clock.set(30.0)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(dependency)

        assert exc_info.value.retry_after == 32
        assert str(exc_info.value) == "Service temporarily unavailable. Retry in 32 seconds."
        assert dependency.calls == 3

    async def test_probe_after_cooldown_closes_on_success(self, clock):
        """Test the first call after the cooldown is attempted and closes the circuit."""
        breaker = CircuitBreaker("llm-service", failure_threshold=3, recovery_timeout=60, clock=clock)
        dependency = Dependency()

        for t in (0.0, 1.0, 2.0):
            clock.set(t)
            await _fail_times(breaker, dependency, 1)

        clock.set(65.0)
        dependency.fail = False
        assert await breaker.call(dependency) == "ok"

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert dependency.calls == 4

    async def test_rejected_at_exact_cooldown(self, clock):
        """Test the circuit stays open until the cooldown has strictly passed."""
        breaker = CircuitBreaker("llm-service", failure_threshold=1, recovery_timeout=60, clock=clock)
        await _fail_times(breaker, Dependency(), 1)

        clock.set(60.0)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(Dependency(fail=False))
        assert exc_info.value.retry_after == 1

    async def test_failed_probe_reopens_and_restarts_cooldown(self, clock):
        """Test a failed probe sends the circuit straight back to open."""
        breaker = CircuitBreaker("llm-service", failure_threshold=2, recovery_timeout=60, clock=clock)
        dependency = Dependency()
        await _fail_times(breaker, dependency, 2)

        clock.set(61.0)
        await _fail_times(breaker, dependency, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.consecutive_failures == 3
        assert breaker.last_failure_time == 61.0

        clock.set(100.0)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(dependency)
        assert exc_info.value.retry_after == 21

    async def test_only_one_probe_in_flight(self, clock):
        """Test concurrent calls are rejected while the half-open probe runs."""
        breaker = CircuitBreaker("llm-service", failure_threshold=1, recovery_timeout=60, clock=clock)
        await _fail_times(breaker, Dependency(), 1)
        clock.set(61.0)

        release = asyncio.Event()
        probe_calls = []

        async def slow_probe():
            probe_calls.append(1)
            await release.wait()
            return "recovered"

        probe = asyncio.ensure_future(breaker.call(slow_probe))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        other = Dependency(fail=False)
        with pytest.raises(CircuitOpenError):
            await breaker.call(other)
        assert other.calls == 0

        release.set()
        assert await probe == "recovered"
        assert probe_calls == [1]
        assert breaker.state == CircuitState.CLOSED

    async def test_cancelled_probe_frees_the_probe_slot(self, clock):
        """Test cancelling the probe lets the next call probe instead."""
        breaker = CircuitBreaker("llm-service", failure_threshold=1, recovery_timeout=60, clock=clock)
        await _fail_times(breaker, Dependency(), 1)
        clock.set(61.0)

        async def hang():
            await asyncio.Event().wait()

        probe = asyncio.ensure_future(breaker.call(hang))
        await asyncio.sleep(0)
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        assert await breaker.call(Dependency(fail=False)) == "ok"
        assert breaker.state == CircuitState.CLOSED

    async def test_success_resets_consecutive_failures(self, clock):
        """Test failures must be consecutive to open the circuit."""
        breaker = CircuitBreaker("llm-service", failure_threshold=3, recovery_timeout=60, clock=clock)
        dependency = Dependency()

        await _fail_times(breaker, dependency, 2)
        dependency.fail = False
        await breaker.call(dependency)
        dependency.fail = True
        await _fail_times(breaker, dependency, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 2

    async def test_error_is_reraised_unchanged(self, clock):
        """Test the breaker does not wrap the operation's exception."""
        breaker = CircuitBreaker("llm-service", clock=clock)

        async def boom():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await breaker.call(boom)

    async def test_reset_closes_circuit(self, clock):
        """Test reset() forces the breaker closed."""
        breaker = CircuitBreaker("llm-service", failure_threshold=1, recovery_timeout=60, clock=clock)
        await _fail_times(breaker, Dependency(), 1)
        assert breaker.state == CircuitState.OPEN

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert await breaker.call(Dependency(fail=False)) == "ok"

    def test_invalid_settings_rejected(self):
        """Test non-positive thresholds raise ValueError."""
        with pytest.raises(ValueError, match="failure_threshold must be > 0"):
            CircuitBreaker("x", failure_threshold=0)
        with pytest.raises(ValueError, match="recovery_timeout must be > 0"):
            CircuitBreaker("x", recovery_timeout=0)


class TestCircuitAudit:
    """Test audit events written on circuit transitions."""

    async def test_opening_is_audited_once(self, clock):
        """Test the CLOSED to OPEN transition writes one audit event."""
        store = InMemoryAuditStore()
        breaker = CircuitBreaker(
            "tts-service", failure_threshold=2, recovery_timeout=60,
            audit=AuditSink(store), clock=clock
        )
        dependency = Dependency()

        await _fail_times(breaker, dependency, 2)
        clock.set(61.0)
        await _fail_times(breaker, dependency, 1)

        events = [e for e in store.recent() if e.action == CIRCUIT_BREAKER_OPENED]
        assert len(events) == 1
        assert events[0].details["dependency"] == "tts-service"
        assert events[0].details["failures"] == 2
        assert events[0].details["error"] == "upstream down"

    async def test_audit_failure_does_not_break_the_breaker(self, clock):
        """Test an audit sink that raises is logged and ignored."""
        audit = Mock()
        audit.record = AsyncMock(side_effect=RuntimeError("audit store down"))
        breaker = CircuitBreaker(
            "tts-service", failure_threshold=1, recovery_timeout=60, audit=audit, clock=clock
        )

        with pytest.raises(ConnectionError):
            await breaker.call(Dependency())

        assert breaker.state == CircuitState.OPEN
        audit.record.assert_awaited_once()

    async def test_concurrent_failures_are_all_counted(self, clock):
        """Test simultaneous failing calls each count and open the circuit once."""
        store = InMemoryAuditStore()
        breaker = CircuitBreaker(
            "llm-service", failure_threshold=5, recovery_timeout=60,
            audit=AuditSink(store), clock=clock
        )
        release = asyncio.Event()
        entered = []

        async def gated_failure():
            entered.append(1)
            await release.wait()
            raise ConnectionError("upstream down")

        tasks = [asyncio.ensure_future(breaker.call(gated_failure)) for _ in range(20)]
        while len(entered) < 20:
            await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, ConnectionError) for r in results)
        assert breaker.state == CircuitState.OPEN
        assert breaker.consecutive_failures == 20
        events = [e for e in store.recent() if e.action == CIRCUIT_BREAKER_OPENED]
        assert len(events) == 1
        assert events[0].details["failures"] == 5


class TestCircuitBreakerRegistry:
    """Test per-dependency breaker ownership."""

    def test_same_name_returns_same_breaker(self):
        registry = CircuitBreakerRegistry()
        assert registry.get("llm-service") is registry.get("llm-service")

    def test_overrides_apply_per_dependency(self):
        """Test overrides win and other names get the defaults."""
        registry = CircuitBreakerRegistry(
            defaults=BreakerSettings(failure_threshold=5, recovery_timeout=60),
            overrides={"tts-service": BreakerSettings(failure_threshold=2, recovery_timeout=10)},
        )

        assert registry.get("tts-service").failure_threshold == 2
        assert registry.get("tts-service").recovery_timeout == 10
        assert registry.get("llm-service").failure_threshold == 5

    async def test_failures_are_isolated_between_dependencies(self, clock):
        """Test opening one circuit leaves the others closed."""
        registry = CircuitBreakerRegistry(
            defaults=BreakerSettings(failure_threshold=1, recovery_timeout=60), clock=clock
        )
        await _fail_times(registry.get("llm-service"), Dependency(), 1)

        assert registry.get("llm-service").state == CircuitState.OPEN
        assert registry.get("tts-service").state == CircuitState.CLOSED
        assert await registry.get("tts-service").call(Dependency(fail=False)) == "ok"

    async def test_reset_all_and_to_dict(self, clock):
        """Test reset_all closes every breaker and to_dict reports states."""
        registry = CircuitBreakerRegistry(
            defaults=BreakerSettings(failure_threshold=1, recovery_timeout=60), clock=clock
        )
        await _fail_times(registry.get("llm-service"), Dependency(), 1)
        registry.get("tts-service")

        states = registry.to_dict()
        assert states["llm-service"]["state"] == "open"
        assert states["llm-service"]["consecutive_failures"] == 1
        assert states["tts-service"]["state"] == "closed"

        registry.reset_all()
        assert all(s["state"] == "closed" for s in registry.to_dict().values())

    async def test_reset_single_dependency(self, clock):
        registry = CircuitBreakerRegistry(
            defaults=BreakerSettings(failure_threshold=1, recovery_timeout=60), clock=clock
        )
        await _fail_times(registry.get("llm-service"), Dependency(), 1)
        await _fail_times(registry.get("tts-service"), Dependency(), 1)

        registry.reset("llm-service")

        snapshots = registry.snapshots()
        assert snapshots["llm-service"].state == CircuitState.CLOSED
        assert snapshots["tts-service"].state == CircuitState.OPEN
