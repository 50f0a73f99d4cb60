"""Gemini request builder for ``streamGenerateContent`` calls."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from gateway.models.llm.llm_models import ChatMessage, ImageAttachment, ProviderRequest

# Gemini names the assistant role "model"
_ROLE_MAP = {"user": "user", "assistant": "model"}


class GeminiRequestBuilder:
    """Builds request headers, path and payload for the Gemini REST API."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def build_headers(self) -> dict[str, str]:
        return {
            "x-goog-api-key": self._api_key,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @staticmethod
    def build_path(model: str) -> str:
        return f"/models/{model}:streamGenerateContent"

    def build_request_body(self, request: ProviderRequest) -> dict[str, Any]:
        system_parts = [
            {"text": msg.content} for msg in request.messages if msg.role == "system"
        ]
        conversation = [msg for msg in request.messages if msg.role != "system"]
        contents = [self._convert_message(msg) for msg in conversation]
        if request.images and contents and conversation[-1].role == "user":
            contents[-1] = self._with_images(conversation[-1], request.images)

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"maxOutputTokens": request.max_output_tokens},
        }
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        return body

    @staticmethod
    def _convert_message(message: ChatMessage) -> dict[str, Any]:
        return {"role": _ROLE_MAP[message.role], "parts": [{"text": message.content}]}

    @staticmethod
    def _with_images(
        message: ChatMessage, images: tuple[ImageAttachment, ...]
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [
            {"inlineData": {"mimeType": image.media_type, "data": image.data_base64}}
            for image in images
        ]
        parts.append({"text": message.content})
        return {"role": _ROLE_MAP[message.role], "parts": parts}
