"""
Circuit breaker for outbound dependencies.

State machine per named dependency:

    CLOSED --(failures >= threshold)--> OPEN
    OPEN --(cooldown elapsed, next call)--> HALF_OPEN
    HALF_OPEN --(probe succeeds)--> CLOSED
    HALF_OPEN --(probe fails)--> OPEN (cooldown restarts)

While OPEN, calls are rejected without being attempted. In HALF_OPEN
exactly one probe call is in flight; anything else is rejected until the
probe settles.

State is process-local. Behind N stateless instances the fleet-wide
threshold is effectively threshold x N.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from bytesteps_guard.log import get_logger

from .audit import CIRCUIT_BREAKER_OPENED
from .exceptions import CircuitOpenError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Rejecting all calls
    HALF_OPEN = "half_open"  # Allowing a single probe call


@dataclass(frozen=True)
class BreakerSettings:
    """Thresholds for one breaker."""
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds

    def __post_init__(self):
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if self.recovery_timeout <= 0:
            raise ValueError("recovery_timeout must be > 0")


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a breaker, for health checks and debugging."""
    name: str
    state: CircuitState
    consecutive_failures: int
    last_failure_time: Optional[float]
    failure_threshold: int
    recovery_timeout: float


class CircuitBreaker:
    """Breaker guarding a single named dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        audit=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = BreakerSettings(failure_threshold, recovery_timeout)
        self.name = name
        self.failure_threshold = settings.failure_threshold
        self.recovery_timeout = settings.recovery_timeout
        self.audit = audit
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.last_failure_time: Optional[float] = None
        self._probe_in_flight = False
        self._lock = threading.Lock()

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation through the breaker.

        Any exception raised by operation counts as one failure and is
        re-raised unchanged.

        Raises:
            CircuitOpenError: If the circuit is open (operation not attempted)
        """
        is_probe = self._before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._release_probe(is_probe)
            raise
        except Exception as e:
            failures_at_open = self._on_failure(e, is_probe)
            if failures_at_open is not None:
                await self._audit_opened(failures_at_open, e)
            raise
        self._on_success(is_probe)
        return result

    def _before_call(self) -> bool:
        """Gate a call. Returns True if the call is the half-open probe."""
        with self._lock:
            if self.state == CircuitState.OPEN:
                elapsed = self._clock() - self.last_failure_time
                if elapsed <= self.recovery_timeout:
                    raise CircuitOpenError(self.name, self.recovery_timeout - elapsed)
                self.state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                logger.info("circuit_half_open", dependency=self.name)
                return True

            if self.state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(self.name, 0)
                self._probe_in_flight = True
                return True

            return False

    def _on_success(self, is_probe: bool) -> None:
        with self._lock:
            if is_probe:
                self._probe_in_flight = False
                self.state = CircuitState.CLOSED
                logger.info("circuit_closed", dependency=self.name)
            if self.state == CircuitState.CLOSED:
                self.consecutive_failures = 0

    def _on_failure(self, error: Exception, is_probe: bool) -> Optional[int]:
        """Count a failure. Returns the failure count if this opened the circuit."""
        opened = False
        with self._lock:
            self.consecutive_failures += 1
            self.last_failure_time = self._clock()
            failures = self.consecutive_failures

            if is_probe:
                self._probe_in_flight = False
                self.state = CircuitState.OPEN
                logger.warning("circuit_reopened", dependency=self.name, error=str(error))
            elif self.state == CircuitState.CLOSED and failures >= self.failure_threshold:
                self.state = CircuitState.OPEN
                opened = True

        if opened:
            logger.error(
                "circuit_opened",
                dependency=self.name,
                failures=failures,
                error=str(error),
            )
            return failures
        return None

    def _release_probe(self, is_probe: bool) -> None:
        # A cancelled probe says nothing about the dependency; let the next call probe
        if is_probe:
            with self._lock:
                self._probe_in_flight = False

    async def _audit_opened(self, failures: int, error: Exception) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.record(CIRCUIT_BREAKER_OPENED, {
                "dependency": self.name,
                "failures": failures,
                "error": str(error),
            })
        except Exception as e:
            logger.warning("circuit_audit_failed", dependency=self.name, error=str(e))

    def reset(self) -> None:
        """Force the breaker CLOSED (operator recovery)."""
        with self._lock:
            self.state = CircuitState.CLOSED
            self.consecutive_failures = 0
            self._probe_in_flight = False
        logger.info("circuit_reset", dependency=self.name)

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                name=self.name,
                state=self.state,
                consecutive_failures=self.consecutive_failures,
                last_failure_time=self.last_failure_time,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
            )


class CircuitBreakerRegistry:
    """Owns one breaker per dependency name.

    Breakers are created on first use from the per-dependency overrides,
    falling back to the defaults. Failures on one dependency never touch
    another's breaker.
    """

    def __init__(
        self,
        defaults: BreakerSettings = BreakerSettings(),
        overrides: Optional[Dict[str, BreakerSettings]] = None,
        audit=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.defaults = defaults
        self.overrides = dict(overrides or {})
        self.audit = audit
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                settings = self.overrides.get(name, self.defaults)
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=settings.failure_threshold,
                    recovery_timeout=settings.recovery_timeout,
                    audit=self.audit,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def snapshots(self) -> Dict[str, CircuitSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.snapshot() for b in breakers}

    def reset(self, name: str) -> None:
        self.get(name).reset()

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Snapshots as plain dicts (JSON-friendly)."""
        return {
            name: {
                "state": snap.state.value,
                "consecutive_failures": snap.consecutive_failures,
                "failure_threshold": snap.failure_threshold,
                "recovery_timeout": snap.recovery_timeout,
            }
            for name, snap in self.snapshots().items()
        }
