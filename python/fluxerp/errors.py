"""Unified error handling with consistent JSON responses."""

import math
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fluxerp.logging import get_logger, get_request_id

logger = get_logger(__name__)


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


class RateLimitResponse(BaseModel):
    """Body returned with a 429 when a rate limit policy rejects a request."""

    success: bool = False
    error: str
    code: str
    retryAfter: int


# -----------------------------------------------------------------------------
# Service errors (not tied to an HTTP response)
# -----------------------------------------------------------------------------


class StoreUnavailableError(Exception):
    """The shared key-value store could not be reached."""


class JobHandlerError(Exception):
    """A job handler failed.

    ``retryable`` decides whether the worker pool schedules another attempt
    (subject to the job's ``max_attempts``).
    """

    retryable = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class UnknownJobTypeError(JobHandlerError):
    """Payload discriminator not recognised by the queue's handler."""

    retryable = False


class JobTimeoutError(JobHandlerError):
    """Handler did not finish within the execution timeout."""


# -----------------------------------------------------------------------------
# API errors
# -----------------------------------------------------------------------------


class APIError(Exception):
    """Base API error with status code and error code."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class BadRequestError(APIError):
    """400 Bad Request."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(400, "BAD_REQUEST", message, details)


class NotFoundError(APIError):
    """404 Not Found."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(404, "NOT_FOUND", message)


class ValidationError(APIError):
    """422 Validation Error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(422, "VALIDATION_ERROR", message, details)


class RateLimitExceededError(APIError):
    """429 Too Many Requests."""

    def __init__(
        self,
        message: str = "Too many requests, please try again later",
        code: str = "RATE_LIMIT_EXCEEDED",
        retry_after_ms: int = 0,
    ) -> None:
        super().__init__(429, code, message)
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after(self) -> int:
        """Seconds until the current window resets, rounded up."""
        return max(1, math.ceil(self.retry_after_ms / 1000))


class InternalError(APIError):
    """500 Internal Server Error."""

    def __init__(
        self,
        message: str = "An internal error occurred",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(500, "INTERNAL_ERROR", message, details)


class QueueUnavailableError(APIError):
    """503 Job store unreachable."""

    def __init__(self, message: str = "Job queue is unavailable") -> None:
        super().__init__(503, "QUEUE_UNAVAILABLE", message)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    request_id = get_request_id()

    # Log error (don't leak internal details for 5xx)
    if exc.status_code >= 500:
        logger.error(
            "Internal error",
            code=exc.code,
            message=exc.message,
            details=exc.details,
            status_code=exc.status_code,
        )
    else:
        logger.warning(
            "API error",
            code=exc.code,
            message=exc.message,
            status_code=exc.status_code,
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            code=exc.code,
            message=exc.message,
            details=(exc.details or None) if exc.status_code < 500 else None,
            request_id=request_id,
        ).model_dump(),
    )


async def rate_limit_error_handler(
    request: Request, exc: RateLimitExceededError
) -> JSONResponse:
    """Handle RateLimitExceededError with the rate limit body and Retry-After."""
    logger.warning(
        "Rate limit exceeded",
        code=exc.code,
        path=request.url.path,
        method=request.method,
        client=request.client.host if request.client else None,
        user_id=getattr(request.state, "user_id", None),
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=RateLimitResponse(
            error=exc.message,
            code=exc.code,
            retryAfter=exc.retry_after,
        ).model_dump(),
        headers={"Retry-After": str(exc.retry_after)},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException."""
    request_id = get_request_id()

    code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMIT_EXCEEDED",
        500: "INTERNAL_ERROR",
        503: "SERVICE_UNAVAILABLE",
    }

    code = code_map.get(exc.status_code, "ERROR")
    message = str(exc.detail) if exc.detail else "An error occurred"

    logger.warning(
        "HTTP exception",
        code=code,
        message=message,
        status_code=exc.status_code,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            code=code,
            message=message,
            request_id=request_id,
        ).model_dump(),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions."""
    request_id = get_request_id()

    logger.exception(
        "Unhandled exception",
        exc_info=exc,
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            code="INTERNAL_ERROR",
            message="An internal error occurred",
            request_id=request_id,
        ).model_dump(),
    )
