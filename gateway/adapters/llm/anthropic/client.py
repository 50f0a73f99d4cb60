"""Anthropic streaming client implementation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from gateway.adapters.llm.anthropic.request_builder import AnthropicRequestBuilder
from gateway.adapters.llm.anthropic.stream_parser import parse_line
from gateway.adapters.llm.base_client import BaseStreamingClient

if TYPE_CHECKING:
    import httpx

    from gateway.models.llm.llm_models import ProviderRequest, StreamChunk
    from gateway.services.adaptive_timeout import AdaptiveTimeoutService


class AnthropicClient(BaseStreamingClient):
    """Anthropic Messages API client implementing LLMStreamClientProtocol."""

    _provider_name = "anthropic"

    def __init__(
        self,
        api_key: str,
        *,
        timeouts: AdaptiveTimeoutService,
        base_url: str = "https://api.anthropic.com",
        anthropic_version: str = "2023-06-01",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeouts=timeouts, transport=transport)
        self._builder = AnthropicRequestBuilder(api_key, anthropic_version=anthropic_version)

    def build_http_request(
        self, client: httpx.AsyncClient, request: ProviderRequest
    ) -> httpx.Request:
        return client.build_request(
            "POST",
            "/v1/messages",
            headers=self._builder.build_headers(),
            json=self._builder.build_request_body(request),
        )

    def parse_line(self, line: str) -> StreamChunk | None:
        return parse_line(line)
