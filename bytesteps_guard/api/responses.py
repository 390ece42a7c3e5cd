"""
HTTP error responses for pipeline rejections.

End users get short, friendly messages and a retry hint, never a raw
stack trace.
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from ..core.exceptions import CircuitOpenError, RateLimitExceeded, RetriesExhaustedError
from ..log import get_logger

logger = get_logger(__name__)

ANONYMOUS_RETRY_AFTER = 3600  # 1 hour

FAILURE_MESSAGES = {
    "ai-coach": "Failed to generate guidance",
    "text-to-speech": "Failed to generate speech",
}


def rate_limit_response(retry_after: int = ANONYMOUS_RETRY_AFTER) -> JSONResponse:
    """429 returned to anonymous callers stopped by the abuse limiter."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests. Please try again later.",
            "message": (
                "For your security, we limit anonymous usage. "
                "Please wait an hour before trying again."
            ),
            "retryAfter": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded. Please try again later.",
            "message": str(exc),
            "retryAfter": exc.retry_after,
        },
        headers={"Retry-After": str(exc.retry_after)},
    )


async def circuit_open_handler(request: Request, exc: CircuitOpenError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={
            "error": "Service temporarily unavailable",
            "message": str(exc),
            "retryAfter": exc.retry_after,
        },
        headers={"Retry-After": str(exc.retry_after)},
    )


async def retries_exhausted_handler(request: Request, exc: RetriesExhaustedError) -> JSONResponse:
    logger.error(
        "request_failed",
        path=request.url.path,
        operation=exc.operation,
        attempts=exc.attempts,
        error=str(exc.last_error),
    )
    return JSONResponse(
        status_code=502,
        content={
            "error": FAILURE_MESSAGES.get(exc.operation, "Request failed"),
            "message": "Something went wrong on our side. Please try again in a moment.",
        },
    )
