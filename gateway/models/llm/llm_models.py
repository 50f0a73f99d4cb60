"""Data models shared by the router, provider clients and the chat pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]


class ChatMessage(BaseModel):
    """One turn of the conversation as sent upstream."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    role: Role = Field(description="Author of the message.")
    content: str = Field(description="Plain-text message body.")


class ImageAttachment(BaseModel):
    """A resolved image ready to be embedded in a provider request."""

    model_config = ConfigDict(frozen=True)

    image_id: str
    media_type: str = Field(default="image/jpeg", description="MIME type of the image bytes.")
    data_base64: str = Field(repr=False, description="Base64-encoded image bytes.")


class RouteProfile(BaseModel):
    """Static description of one upstream provider, built at startup."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    max_output_tokens: int
    cost_per_1k_input: float = 0.0
    cost_per_1k_output: float = 0.0
    enabled: bool = True
    supports_vision: bool = True

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        cost = (
            input_tokens / 1000 * self.cost_per_1k_input
            + output_tokens / 1000 * self.cost_per_1k_output
        )
        return round(cost, 8)


class ProviderRequest(BaseModel):
    """Everything a provider client needs to open one upstream stream."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[ChatMessage, ...]
    model: str
    max_output_tokens: int
    images: tuple[ImageAttachment, ...] = ()


@dataclass(frozen=True, slots=True)
class UsageMetrics:
    """Token counters for one streamed call.

    Providers report running totals rather than increments, so merging keeps the
    larger value of each counter.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def merge(self, delta: UsageMetrics | None) -> UsageMetrics:
        if delta is None:
            return self
        return UsageMetrics(
            input_tokens=max(self.input_tokens, delta.input_tokens),
            output_tokens=max(self.output_tokens, delta.output_tokens),
            cost_usd=self.cost_usd,
        )

    def priced(self, profile: RouteProfile) -> UsageMetrics:
        return UsageMetrics(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cost_usd=profile.estimate_cost(self.input_tokens, self.output_tokens),
        )

    def to_payload(self) -> dict[str, int | float]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "costUsd": self.cost_usd,
        }


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """Normalized output of one upstream stream line."""

    text: str | None = None
    usage: UsageMetrics | None = None
    finish_reason: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text and self.usage is None and self.finish_reason is None
