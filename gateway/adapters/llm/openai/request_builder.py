"""OpenAI request builder for streaming chat completions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from gateway.models.llm.llm_models import ChatMessage, ImageAttachment, ProviderRequest


class OpenAIRequestBuilder:
    """Builds request headers and payloads for the OpenAI chat completions API."""

    def __init__(self, api_key: str, *, organization: str | None = None) -> None:
        self._api_key = api_key
        self._organization = organization

    def build_headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._organization:
            headers["OpenAI-Organization"] = self._organization
        return headers

    def build_request_body(self, request: ProviderRequest) -> dict[str, Any]:
        """Build a streaming chat completions body.

        Images are attached to the final user message as ``image_url`` parts
        carrying base64 data URLs.
        """
        messages = [self._convert_message(msg) for msg in request.messages]
        if request.images and messages:
            messages[-1] = self._with_images(request.messages[-1], request.images)

        return {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_output_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    @staticmethod
    def _convert_message(message: ChatMessage) -> dict[str, Any]:
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _with_images(
        message: ChatMessage, images: tuple[ImageAttachment, ...]
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
        for image in images:
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{image.media_type};base64,{image.data_base64}"},
                }
            )
        return {"role": message.role, "content": parts}

