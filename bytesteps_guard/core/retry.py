"""
Retry policy with exponential backoff.

Re-attempts a failed async operation a bounded number of times:

    attempts = max_retries + 1, strictly sequential
    delay after attempt n = min(base_delay * 2 ** (n - 1), max_delay)

No jitter is applied. Every attempt is audited (api_success / api_error)
and may be bounded by a per-attempt timeout so one stalled call cannot
hold a retry sequence open forever.

On exhaustion a RetriesExhaustedError is raised; failures are never
reported as a None result.
"""

import asyncio
import traceback
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bytesteps_guard.log import get_logger

from .audit import API_ERROR, API_SUCCESS
from .exceptions import AttemptTimeoutError, RetriesExhaustedError

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Bounded retry loop around an async operation.

    Attributes:
        max_retries: Retries after the first attempt (attempts = max_retries + 1)
        base_delay: Delay in seconds after the first failed attempt
        max_delay: Ceiling for any single backoff delay
        attempt_timeout: Per-attempt limit in seconds, None for no limit
    """

    def __init__(
        self,
        audit=None,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        attempt_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if attempt_timeout is not None and attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be > 0")

        self.audit = audit
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds after failed attempt number `attempt` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "API call",
        on_error: Optional[Callable[[BaseException], Any]] = None,
        max_retries: Optional[int] = None,
    ) -> T:
        """Run operation until it succeeds or attempts run out.

        Args:
            operation: Zero-argument callable returning an awaitable
            operation_name: Name used in audit events, logs and errors
            on_error: Called with the last error once all attempts failed
            max_retries: Override the policy's max_retries for this call

        Returns:
            The first successful result

        Raises:
            RetriesExhaustedError: If every attempt failed
        """
        retries = self.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError("max_retries must be >= 0")
        attempts = retries + 1

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, max=self.max_delay),
            retry=retry_if_exception_type(Exception),
            before_sleep=self._log_retry(operation_name),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._attempt(
                        operation, operation_name, attempt.retry_state.attempt_number
                    )
        except Exception as e:
            logger.error(
                "retries_exhausted",
                operation=operation_name,
                attempts=attempts,
                error=str(e),
            )
            if on_error is not None:
                self._notify(on_error, operation_name, e)
            raise RetriesExhaustedError(operation_name, attempts, e) from e

    @staticmethod
    def _notify(
        on_error: Callable[[BaseException], Any],
        operation_name: str,
        error: BaseException
    ) -> None:
        try:
            on_error(error)
        except Exception as callback_error:
            # The caller still gets RetriesExhaustedError
            logger.error(
                "on_error_callback_failed",
                operation=operation_name,
                error=str(callback_error),
            )

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        attempt: int
    ) -> T:
        try:
            if self.attempt_timeout is None:
                result = await operation()
            else:
                try:
                    result = await asyncio.wait_for(operation(), self.attempt_timeout)
                except asyncio.TimeoutError as e:
                    raise AttemptTimeoutError(operation_name, self.attempt_timeout) from e
        except Exception as e:
            await self._record(API_ERROR, {
                "operation": operation_name,
                "attempt": attempt,
                "error": str(e),
                "stack": traceback.format_exc(),
            })
            raise

        await self._record(API_SUCCESS, {"operation": operation_name, "attempt": attempt})
        return result

    async def _record(self, action: str, details: dict) -> None:
        if self.audit is not None:
            await self.audit.record(action, details)

    @staticmethod
    def _log_retry(operation_name: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                "retrying",
                operation=operation_name,
                attempt=retry_state.attempt_number,
                wait_seconds=round(wait, 2),
                error=str(exc) if exc else None,
                error_type=type(exc).__name__ if exc else None,
            )
        return before_sleep
