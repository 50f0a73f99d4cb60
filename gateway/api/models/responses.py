"""
Response envelopes shared by the exception handlers and the chat router.
"""

from __future__ import annotations

from typing import Any

from gateway.api.context import current_request_context


def response_meta() -> dict[str, str | None]:
    context = current_request_context()
    return {
        "requestId": context.request_id if context else None,
        "traceId": context.trace_id if context else None,
    }


def error_response(payload: dict[str, Any]) -> dict[str, Any]:
    """Wrap an error payload as ``{"error": ..., "meta": {requestId, traceId}}``."""
    return {"error": payload, "meta": response_meta()}
