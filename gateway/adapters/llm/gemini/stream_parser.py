"""Parser for Gemini ``streamGenerateContent?alt=sse`` lines."""

from __future__ import annotations

from gateway.adapters.llm.streaming import load_json_payload, shape_checked, sse_data
from gateway.api.exceptions import ContentBlockedError, ProviderError
from gateway.models.llm.llm_models import StreamChunk, UsageMetrics

PROVIDER = "gemini"

BLOCKING_FINISH_REASONS = frozenset(
    {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}
)


@shape_checked(PROVIDER)
def parse_line(line: str) -> StreamChunk | None:
    """Parse one line of a Gemini streaming response.

    ``usageMetadata`` holds running totals and may appear on every chunk.
    """
    payload = sse_data(line)
    if payload is None or not payload.strip():
        return None

    data = load_json_payload(PROVIDER, payload)

    error = data.get("error")
    if isinstance(error, dict):
        status = error.get("code")
        raise ProviderError(
            PROVIDER,
            f"gemini stream error: {error.get('message', 'unknown error')}",
            upstream_status=int(status) if isinstance(status, int) else None,
        )

    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise ContentBlockedError(PROVIDER, str(feedback["blockReason"]))

    usage = None
    raw_usage = data.get("usageMetadata")
    if isinstance(raw_usage, dict):
        usage = UsageMetrics(
            input_tokens=int(raw_usage.get("promptTokenCount") or 0),
            output_tokens=int(raw_usage.get("candidatesTokenCount") or 0),
        )

    text = None
    finish_reason = None
    candidates = data.get("candidates") or []
    if candidates:
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        # Thought summaries are flagged with "thought": true and not shown to callers
        pieces = [
            part["text"]
            for part in parts
            if isinstance(part.get("text"), str) and not part.get("thought")
        ]
        text = "".join(pieces) or None
        finish_reason = candidate.get("finishReason")
        if finish_reason in BLOCKING_FINISH_REASONS:
            raise ContentBlockedError(PROVIDER, finish_reason)

    return StreamChunk(text=text, usage=usage, finish_reason=finish_reason)
