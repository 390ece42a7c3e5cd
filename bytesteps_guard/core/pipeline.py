"""
Resilient outbound call pipeline.

Composition order for every call:

    rate limiter -> circuit breaker -> retry policy -> operation

The breaker wraps the whole retry loop, so a transient blip is absorbed
by retries and only a fully exhausted sequence counts once against the
breaker's failure budget. Each attempt is audited by the retry policy;
circuit openings are audited by the breaker.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from bytesteps_guard.log import get_logger
from bytesteps_guard.storage.audit_log import InMemoryAuditStore, SqliteAuditStore
from bytesteps_guard.storage.db import initialize_schema
from bytesteps_guard.storage.rate_limits import InMemoryRateLimitStore, SqliteRateLimitStore

from .audit import AuditSink
from .circuit_breaker import CircuitBreakerRegistry
from .exceptions import RateLimitExceeded
from .rate_limiter import UNKNOWN_IDENTITY, RateLimiter
from .retry import RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")


class ResilientCaller:
    """Orchestrates the guards around an outbound operation.

    Owns the breaker registry explicitly; there is no module-level
    breaker state.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        breakers: CircuitBreakerRegistry,
        retry_policy: RetryPolicy,
        audit: Optional[AuditSink] = None
    ):
        self.rate_limiter = rate_limiter
        self.breakers = breakers
        self.retry_policy = retry_policy
        self.audit = audit

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        dependency: str,
        operation_name: str,
        identity: Optional[str] = None,
        limit=None,
        endpoint: Optional[str] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
    ) -> T:
        """Invoke operation behind the rate limiter, breaker and retries.

        Args:
            operation: Zero-argument callable returning an awaitable
            dependency: Breaker name of the external service, e.g. "llm-service"
            operation_name: Human-readable name for audit events and errors
            identity: Caller IP or user id for rate limiting
            limit: RateLimitRule for this call; None skips rate limiting
            endpoint: Rate-limit key, defaults to operation_name
            on_error: Called with the last error when retries are exhausted

        Returns:
            The operation's result

        Raises:
            RateLimitExceeded: Identity is over its allowance (not attempted)
            CircuitOpenError: Dependency circuit is open (not attempted)
            RetriesExhaustedError: Every attempt failed
        """
        if limit is not None:
            endpoint = endpoint or operation_name
            if not await self.rate_limiter.allow(identity, endpoint, limit.max_requests, limit.window_seconds):
                raise RateLimitExceeded(
                    identity or UNKNOWN_IDENTITY,
                    endpoint,
                    self.rate_limiter.retry_after(limit.window_seconds),
                )

        breaker = self.breakers.get(dependency)
        return await breaker.call(
            lambda: self.retry_policy.execute(operation, operation_name, on_error=on_error)
        )


def build_caller(
    config,
    persistent: bool = True,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    wall_clock: Callable[[], float] = time.time,
    monotonic_clock: Callable[[], float] = time.monotonic,
) -> ResilientCaller:
    """Wire a ResilientCaller from a ResilienceConfig.

    Args:
        config: ResilienceConfig
        persistent: Use the SQLite stores at config.db_path (schema is
            created if missing); otherwise keep everything in memory
        sleep: Backoff sleep, injectable for tests
        wall_clock: Clock for rate-limit timestamps
        monotonic_clock: Clock for breaker cooldowns

    Returns:
        Ready-to-use caller
    """
    if persistent:
        initialize_schema(config.db_path)
        audit_store = SqliteAuditStore(config.db_path, max_records=config.audit_max_records)
        limit_store = SqliteRateLimitStore(config.db_path)
    else:
        audit_store = InMemoryAuditStore(max_records=config.audit_max_records)
        limit_store = InMemoryRateLimitStore()

    audit = AuditSink(audit_store)
    breakers = CircuitBreakerRegistry(
        defaults=config.breaker_defaults,
        overrides=config.breakers,
        audit=audit,
        clock=monotonic_clock,
    )
    retry_policy = RetryPolicy(
        audit=audit,
        max_retries=config.retry.max_retries,
        base_delay=config.retry.base_delay_seconds,
        max_delay=config.retry.max_delay_seconds,
        attempt_timeout=config.retry.attempt_timeout_seconds,
        sleep=sleep,
    )
    # Per-endpoint limits fail open: a store outage must not lock users out
    rate_limiter = RateLimiter(limit_store, fail_open=True, clock=wall_clock)

    logger.info(
        "caller_built",
        persistent=persistent,
        db_path=config.db_path if persistent else None,
        max_retries=config.retry.max_retries,
    )
    return ResilientCaller(rate_limiter, breakers, retry_policy, audit)


def build_abuse_limiter(caller: ResilientCaller) -> RateLimiter:
    """Anonymous-abuse limiter sharing the caller's record store.

    Fails CLOSED: if the store cannot be checked the request is denied,
    since this limiter exists only to stop abuse.
    """
    return RateLimiter(
        caller.rate_limiter.store,
        fail_open=False,
        clock=caller.rate_limiter.clock,
    )
