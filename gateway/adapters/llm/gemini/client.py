"""Gemini streaming client implementation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from gateway.adapters.llm.base_client import BaseStreamingClient
from gateway.adapters.llm.gemini.request_builder import GeminiRequestBuilder
from gateway.adapters.llm.gemini.stream_parser import parse_line

if TYPE_CHECKING:
    import httpx

    from gateway.models.llm.llm_models import ProviderRequest, StreamChunk
    from gateway.services.adaptive_timeout import AdaptiveTimeoutService


class GeminiClient(BaseStreamingClient):
    """Gemini generateContent client implementing LLMStreamClientProtocol."""

    _provider_name = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        timeouts: AdaptiveTimeoutService,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeouts=timeouts, transport=transport)
        self._builder = GeminiRequestBuilder(api_key)

    def build_http_request(
        self, client: httpx.AsyncClient, request: ProviderRequest
    ) -> httpx.Request:
        return client.build_request(
            "POST",
            self._builder.build_path(request.model),
            params={"alt": "sse"},
            headers=self._builder.build_headers(),
            json=self._builder.build_request_body(request),
        )

    def parse_line(self, line: str) -> StreamChunk | None:
        return parse_line(line)
