"""
Streaming chat endpoint.

``POST /v1/chat`` answers with ``text/event-stream``: a ``metadata`` event,
``text`` deltas (plus ``debug`` events for authorized callers), then a
terminal ``done`` or ``error``. If the pipeline fails before producing
anything, for example when no provider is available, the client gets a plain
JSON error with the matching HTTP status instead of a stream.
"""

from __future__ import annotations

import hmac
import json
from contextlib import aclosing
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse, StreamingResponse

from gateway.api.auth import get_caller
from gateway.api.dependencies import get_chat_gateway, get_gateway_config
from gateway.api.error_handlers import app_error_response
from gateway.api.exceptions import InternalError
from gateway.api.models.requests import ChatRequest
from gateway.config import GatewayConfig
from gateway.core.logging_utils import get_logger
from gateway.services.chat_gateway import MODE_SEARCH_ASSIST, ChatCommand, ChatGateway

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gateway.services.chat_gateway import GatewayEvent

logger = get_logger(__name__)
router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: GatewayEvent) -> str:
    """Serialize one event as an SSE frame.

    Text deltas are sent raw; a delta containing newlines is split across
    several ``data:`` lines, which SSE clients join back with ``\\n``.
    """
    if event.event == "text":
        text = str(event.data).replace("\r\n", "\n").replace("\r", "\n")
        lines = text.split("\n")
    else:
        lines = [json.dumps(event.data, ensure_ascii=False, separators=(",", ":"))]
    data = "".join(f"data: {line}\n" for line in lines)
    return f"event: {event.event}\n{data}\n"


def is_debug_authorized(token: str | None, secret: str | None) -> bool:
    if not token or not secret:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


async def _sse_body(
    first: GatewayEvent, events: AsyncIterator[GatewayEvent]
) -> AsyncIterator[str]:
    async with aclosing(events):
        yield format_sse(first)
        async for event in events:
            yield format_sse(event)


@router.post("/chat")
async def chat(
    body: ChatRequest,
    caller_id: str = Depends(get_caller),
    gateway: ChatGateway = Depends(get_chat_gateway),
    config: GatewayConfig = Depends(get_gateway_config),
    x_debug_token: str | None = Header(default=None, alias="X-Debug-Token"),
):
    """Stream a chat completion from the best available provider."""
    body.enforce_limits(config.request_limits)

    command = ChatCommand(
        caller_id=caller_id,
        messages=tuple(m.to_domain() for m in body.messages),
        image_ids=tuple(str(i) for i in body.image_ids),
        conversation_id=str(body.conversation_id) if body.conversation_id else None,
        mode=body.mode,
        preferred_provider=body.preferred_provider,
        idempotency_key=body.idempotency_key,
        debug=is_debug_authorized(x_debug_token, config.runtime.debug_secret),
    )
    logger.info(
        "chat_request_received",
        extra={
            "message_count": len(command.messages),
            "image_count": len(command.image_ids),
            "mode": command.mode,
            "preferred_provider": command.preferred_provider,
            "debug": command.debug,
        },
    )

    if command.mode == MODE_SEARCH_ASSIST:
        return JSONResponse(await gateway.search(command))

    events = await gateway.open_stream(command)
    try:
        first = await anext(events)
    except StopAsyncIteration:
        raise InternalError("Stream ended before producing any event") from None

    if first.is_error:
        # Already logged by the producer
        await events.aclose()
        return app_error_response(first.error or InternalError())

    return StreamingResponse(
        _sse_body(first, events),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
