"""Anthropic request builder for streaming Messages API calls."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from gateway.models.llm.llm_models import ChatMessage, ImageAttachment, ProviderRequest


class AnthropicRequestBuilder:
    """Builds request headers and payloads for Anthropic API calls."""

    def __init__(self, api_key: str, *, anthropic_version: str = "2023-06-01") -> None:
        self._api_key = api_key
        self._anthropic_version = anthropic_version

    def build_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "Content-Type": "application/json",
            "anthropic-version": self._anthropic_version,
            "Accept": "text/event-stream",
        }

    def build_request_body(self, request: ProviderRequest) -> dict[str, Any]:
        """Build the request body for the Messages API.

        Anthropic takes the system prompt as a top-level ``system`` parameter
        rather than as a message, and requires ``max_tokens``.
        """
        system_content, filtered = self._extract_system_message(request.messages)
        messages = [self._convert_message(msg) for msg in filtered]
        if request.images and messages and filtered[-1].role == "user":
            messages[-1] = self._with_images(filtered[-1], request.images)

        body: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_output_tokens,
            "stream": True,
        }
        if system_content:
            body["system"] = system_content
        return body

    @staticmethod
    def _extract_system_message(
        messages: tuple[ChatMessage, ...],
    ) -> tuple[str | None, list[ChatMessage]]:
        system_content: str | None = None
        filtered: list[ChatMessage] = []

        for msg in messages:
            if msg.role == "system":
                # Concatenate multiple system messages if present
                system_content = (
                    f"{system_content}\n\n{msg.content}" if system_content else msg.content
                )
            else:
                filtered.append(msg)

        return system_content, filtered

    @staticmethod
    def _convert_message(message: ChatMessage) -> dict[str, Any]:
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _with_images(
        message: ChatMessage, images: tuple[ImageAttachment, ...]
    ) -> dict[str, Any]:
        blocks: list[dict[str, Any]] = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image.media_type,
                    "data": image.data_base64,
                },
            }
            for image in images
        ]
        blocks.append({"type": "text", "text": message.content})
        return {"role": message.role, "content": blocks}
