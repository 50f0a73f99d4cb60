"""Global exception handlers.

Every pre-stream failure is rendered as
``{"error": {errorType, code, message, retryable, retryAfter?}, "meta": {...}}``
and logged exactly once, here.
"""

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from gateway.api.exceptions import AppError, InternalError, ValidationError
from gateway.api.models.responses import error_response

logger = logging.getLogger(__name__)


def app_error_response(exc: AppError) -> JSONResponse:
    """Build the JSON response for an AppError without logging it."""
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.to_payload()),
        headers=headers or None,
    )


async def app_error_handler(request: Request, exc: Exception) -> Response:
    """Handle gateway errors raised before a stream opens."""
    # Type narrowing for FastAPI compatibility
    if not isinstance(exc, AppError):
        raise exc

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "api_error",
        extra={
            "error_code": exc.error_code.value,
            "error_type": exc.error_type.value,
            "error": exc.message,
            "status_code": exc.status_code,
            "retryable": exc.retryable,
            "path": request.url.path,
        },
    )
    return app_error_response(exc)


async def validation_exception_handler(request: Request, exc: Exception) -> Response:
    """Handle request body validation errors as 400s."""
    if not isinstance(exc, RequestValidationError):
        raise exc

    formatted_errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    logger.warning(
        "request_validation_failed",
        extra={"errors": formatted_errors, "path": request.url.path},
    )

    error = ValidationError("Request validation failed", details={"fields": formatted_errors})
    payload = error.to_payload()
    payload["details"] = error.details
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_response(payload),
    )


async def global_exception_handler(request: Request, exc: Exception) -> Response:
    """Catch-all handler for unexpected exceptions."""
    logger.error(
        "unhandled_exception",
        exc_info=exc,
        extra={"error": str(exc), "path": request.url.path},
    )
    # Don't leak error details to callers
    return app_error_response(InternalError())
