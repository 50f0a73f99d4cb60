"""Parser for OpenAI chat completion SSE lines."""

from __future__ import annotations

from gateway.adapters.llm.streaming import SSE_DONE, load_json_payload, shape_checked, sse_data
from gateway.api.exceptions import ContentBlockedError, ProviderError
from gateway.models.llm.llm_models import StreamChunk, UsageMetrics

PROVIDER = "openai"


@shape_checked(PROVIDER)
def parse_line(line: str) -> StreamChunk | None:
    """Parse one line of an OpenAI streaming response.

    ``data: [DONE]`` terminates the stream and yields nothing. The final chunk
    (when ``stream_options.include_usage`` is set) has no choices and carries
    the usage block.
    """
    payload = sse_data(line)
    if payload is None or not payload.strip() or payload.strip() == SSE_DONE:
        return None

    data = load_json_payload(PROVIDER, payload)

    error = data.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ProviderError(PROVIDER, f"openai stream error: {message}", retryable=False)

    usage = None
    raw_usage = data.get("usage")
    if isinstance(raw_usage, dict):
        usage = UsageMetrics(
            input_tokens=int(raw_usage.get("prompt_tokens") or 0),
            output_tokens=int(raw_usage.get("completion_tokens") or 0),
        )

    text = None
    finish_reason = None
    choices = data.get("choices") or []
    if choices:
        choice = choices[0]
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if isinstance(content, str) and content:
            text = content
        finish_reason = choice.get("finish_reason")
        if finish_reason == "content_filter":
            raise ContentBlockedError(PROVIDER, "content_filter")

    return StreamChunk(text=text, usage=usage, finish_reason=finish_reason)
