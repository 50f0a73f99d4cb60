"""OpenAI streaming client implementation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from gateway.adapters.llm.base_client import BaseStreamingClient
from gateway.adapters.llm.openai.request_builder import OpenAIRequestBuilder
from gateway.adapters.llm.openai.stream_parser import parse_line

if TYPE_CHECKING:
    import httpx

    from gateway.models.llm.llm_models import ProviderRequest, StreamChunk
    from gateway.services.adaptive_timeout import AdaptiveTimeoutService


class OpenAIClient(BaseStreamingClient):
    """OpenAI chat completions client implementing LLMStreamClientProtocol."""

    _provider_name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        timeouts: AdaptiveTimeoutService,
        base_url: str = "https://api.openai.com/v1",
        organization: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeouts=timeouts, transport=transport)
        self._builder = OpenAIRequestBuilder(api_key, organization=organization)

    def build_http_request(
        self, client: httpx.AsyncClient, request: ProviderRequest
    ) -> httpx.Request:
        return client.build_request(
            "POST",
            "/chat/completions",
            headers=self._builder.build_headers(),
            json=self._builder.build_request_body(request),
        )

    def parse_line(self, line: str) -> StreamChunk | None:
        return parse_line(line)
