"""Parser for Anthropic Messages API SSE lines."""

from __future__ import annotations

from gateway.adapters.llm.streaming import load_json_payload, shape_checked, sse_data
from gateway.api.exceptions import ContentBlockedError, ProviderError
from gateway.models.llm.llm_models import StreamChunk, UsageMetrics

PROVIDER = "anthropic"

# Anthropic signals overload in-band with this error type; treat it like HTTP 529
_OVERLOADED = "overloaded_error"


def _usage(raw: object) -> UsageMetrics | None:
    if not isinstance(raw, dict):
        return None
    return UsageMetrics(
        input_tokens=int(raw.get("input_tokens") or 0),
        output_tokens=int(raw.get("output_tokens") or 0),
    )


@shape_checked(PROVIDER)
def parse_line(line: str) -> StreamChunk | None:
    """Parse one line of an Anthropic streaming response.

    ``event:`` lines are ignored because every ``data:`` payload repeats its
    event name in ``type``.
    """
    payload = sse_data(line)
    if payload is None or not payload.strip():
        return None

    data = load_json_payload(PROVIDER, payload)
    event_type = data.get("type")

    if event_type == "content_block_delta":
        delta = data.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            return StreamChunk(text=delta["text"])
        return None

    if event_type == "message_start":
        message = data.get("message") or {}
        return StreamChunk(usage=_usage(message.get("usage")))

    if event_type == "message_delta":
        delta = data.get("delta") or {}
        stop_reason = delta.get("stop_reason")
        if stop_reason == "refusal":
            raise ContentBlockedError(PROVIDER, "refusal")
        return StreamChunk(usage=_usage(data.get("usage")), finish_reason=stop_reason)

    if event_type == "error":
        error = data.get("error") or {}
        error_type = error.get("type", "api_error")
        message = error.get("message", "stream error")
        if error_type == _OVERLOADED:
            raise ProviderError(PROVIDER, f"anthropic overloaded: {message}", upstream_status=529)
        raise ProviderError(
            PROVIDER, f"anthropic stream error ({error_type}): {message}", retryable=False
        )

    # ping, content_block_start, content_block_stop, message_stop
    return None
