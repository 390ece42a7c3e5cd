"""
Error types raised by the outbound call pipeline.

Each rejection and failure kind is a distinct class so callers can tell
"try again" from "service temporarily unavailable" from "slow down".
"""

import math


class GuardError(Exception):
    """Base exception for pipeline errors."""
    pass


class RateLimitExceeded(GuardError):
    """Raised when an identity exceeds its allowance for an endpoint.

    The call was never attempted.
    """

    def __init__(self, identity: str, endpoint: str, retry_after: int):
        self.identity = identity
        self.endpoint = endpoint
        self.retry_after = retry_after
        super().__init__(
            f"Too many requests to {endpoint}. Please wait before trying again."
        )


class CircuitOpenError(GuardError):
    """Raised when a dependency's circuit is open.

    The call was never attempted and does not count as a new failure.
    """

    def __init__(self, dependency: str, retry_after: float):
        self.dependency = dependency
        self.retry_after = max(1, math.ceil(retry_after))
        super().__init__(
            f"Service temporarily unavailable. Retry in {self.retry_after} seconds."
        )


class RetriesExhaustedError(GuardError):
    """Raised when every attempt of an operation failed.

    The last attempt's exception is available as last_error and is also
    chained as __cause__.
    """

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}"
        )


class AttemptTimeoutError(GuardError):
    """Raised when a single attempt exceeds the per-attempt timeout."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s")
