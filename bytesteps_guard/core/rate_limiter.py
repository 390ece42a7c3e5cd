"""
Sliding-window rate limiting.

Bounds how many operations an identity (client IP or user id) may
perform against a logical endpoint within a rolling window.

Failure policy:
    The limiter is only as available as its store. For low-stakes
    endpoints the limiter fails OPEN (a store outage lets calls through
    so legitimate users are not locked out by an infrastructure fault).
    The anonymous abuse limiter fails CLOSED, because its only job is to
    stop abuse.
"""

import asyncio
import math
import time
from typing import Callable, Mapping, Optional

from bytesteps_guard.log import get_logger

logger = get_logger(__name__)

UNKNOWN_IDENTITY = "unknown"


def resolve_client_identity(headers: Mapping[str, str]) -> str:
    """Work out the caller's IP from proxy headers.

    Priority:
      1. First entry of X-Forwarded-For (original client)
      2. X-Real-IP
      3. "unknown"
    """
    forwarded_for = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
        if ip:
            return ip

    real_ip = headers.get("x-real-ip") or headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return UNKNOWN_IDENTITY


class RateLimiter:
    """Sliding-window limiter in front of a rate-limit store.

    Attributes:
        store: InMemoryRateLimitStore or SqliteRateLimitStore
        fail_open: Outcome of allow() when the store raises
    """

    def __init__(
        self,
        store,
        fail_open: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.fail_open = fail_open
        self.clock = clock

    async def allow(
        self,
        identity: Optional[str],
        endpoint: str,
        max_requests: int,
        window_seconds: float
    ) -> bool:
        """Check the window and record this attempt if it is allowed.

        Attempts with a timestamp at or after now - window_seconds count.
        With max_requests prior attempts in the window the next one is
        denied, and a denied attempt is not recorded. The store is queried
        in a worker thread so a locked database never stalls the event loop.

        Args:
            identity: Client IP or user id; empty falls back to "unknown"
            endpoint: Logical operation name
            max_requests: Allowed attempts per window (> 0)
            window_seconds: Window length in seconds (> 0)

        Returns:
            True if the call may proceed

        Raises:
            ValueError: If max_requests or window_seconds is not positive
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        identity = identity or UNKNOWN_IDENTITY
        now = self.clock()
        window_start = now - window_seconds

        try:
            allowed = await asyncio.to_thread(
                self.store.check_and_record,
                identity, endpoint, max_requests, window_start, now
            )
        except Exception as e:
            logger.error(
                "rate_limit_store_failed",
                identity=identity,
                endpoint=endpoint,
                error=str(e),
                fail_open=self.fail_open,
            )
            return self.fail_open

        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                identity=identity,
                endpoint=endpoint,
                max_requests=max_requests,
                window_seconds=window_seconds,
            )
        return allowed

    def retry_after(self, window_seconds: float) -> int:
        """Seconds a denied caller is told to wait (the full window)."""
        return max(1, math.ceil(window_seconds))

    def cleanup(self, window_seconds: float) -> int:
        """Prune records that can no longer fall inside any window.

        Returns:
            Number of records removed
        """
        removed = self.store.prune(self.clock() - window_seconds)
        logger.info("rate_limit_records_pruned", removed=removed)
        return removed
