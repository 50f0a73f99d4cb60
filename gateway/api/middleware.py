"""FastAPI middleware for request processing."""

from __future__ import annotations

import time
from collections.abc import Callable

from fastapi import Request

from gateway.api.context import RequestContext, request_context_ctx
from gateway.api.error_handlers import global_exception_handler
from gateway.core.logging_utils import get_logger

logger = get_logger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
}


async def request_context_middleware(request: Request, call_next: Callable):
    """
    Create the per-request context and stamp identifiers onto the response.

    Continues an inbound W3C ``traceparent`` when one is supplied. Unexpected
    errors are turned into the 500 envelope here, while the context is still set.
    """
    log_level = getattr(request.app.state, "log_level", "INFO")
    context = RequestContext.new(request.headers.get("traceparent"), log_level=log_level)
    request.state.request_context = context
    token = request_context_ctx.set(context)
    started = time.perf_counter()

    try:
        try:
            response = await call_next(request)
        except Exception as exc:
            response = await global_exception_handler(request, exc)
        response.headers["X-Request-Id"] = context.request_id
        response.headers["X-Trace-Id"] = context.trace_id
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        logger.info(
            "http_request_handled",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return response
    finally:
        request_context_ctx.reset(token)
