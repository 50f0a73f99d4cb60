"""Tests for the provider streaming clients against a stubbed upstream."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable

import httpx
import pytest
from conftest import gemini_stream, sse_body

from gateway.adapters.llm import AnthropicClient, GeminiClient, LLMClientFactory, OpenAIClient
from gateway.adapters.llm.protocol import LLMStreamClientProtocol
from gateway.api.exceptions import ErrorCode, GatewayTimeoutError, ProviderError
from gateway.config import AdaptiveTimeoutConfig, GatewayConfig
from gateway.models.llm.llm_models import (
    ChatMessage,
    ImageAttachment,
    ProviderRequest,
    StreamChunk,
    UsageMetrics,
)
from gateway.services.adaptive_timeout import CONNECT, FIRST_TOKEN, AdaptiveTimeoutService


@pytest.fixture
def timeouts() -> AdaptiveTimeoutService:
    return AdaptiveTimeoutService(
        AdaptiveTimeoutConfig(
            connect_timeout_sec=0.2, inactivity_timeout_sec=0.2, total_timeout_sec=5.0
        )
    )


def _request(*messages: ChatMessage, images: tuple[ImageAttachment, ...] = ()) -> ProviderRequest:
    return ProviderRequest(
        messages=messages or (ChatMessage(role="user", content="Hello"),),
        model="test-model",
        max_output_tokens=256,
        images=images,
    )


async def _drain(stream: AsyncIterator[StreamChunk]) -> tuple[str, UsageMetrics]:
    text = []
    usage = UsageMetrics()
    async for chunk in stream:
        if chunk.text:
            text.append(chunk.text)
        usage = usage.merge(chunk.usage)
    return "".join(text), usage


class TestOpenAIClient:
    @pytest.mark.asyncio
    async def test_streams_text_and_usage(
        self,
        timeouts: AdaptiveTimeoutService,
        recording_transport: Callable[..., tuple[httpx.MockTransport, list[httpx.Request]]],
    ) -> None:
        body = sse_body(
            {"choices": [{"delta": {"role": "assistant", "content": "Hello"}}]},
            {"choices": [{"delta": {"content": " world"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}},
            "[DONE]",
        )
        transport, seen = recording_transport(
            lambda request: httpx.Response(200, content=body)
        )
        client = OpenAIClient(
            "sk-test", timeouts=timeouts, base_url="https://openai.test/v1", transport=transport
        )

        async with client:
            text, usage = await _drain(client.stream_chat(_request()))

        assert text == "Hello world"
        assert (usage.input_tokens, usage.output_tokens) == (5, 2)

        sent = seen[0]
        assert sent.url.path == "/v1/chat/completions"
        assert sent.headers["authorization"] == "Bearer sk-test"
        payload = json.loads(sent.content)
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["max_tokens"] == 256
        assert timeouts.sample_count("openai", CONNECT) == 1
        assert timeouts.sample_count("openai", FIRST_TOKEN) == 1

    @pytest.mark.asyncio
    async def test_images_become_data_urls(self, timeouts: AdaptiveTimeoutService) -> None:
        client = OpenAIClient("sk-test", timeouts=timeouts)
        image = ImageAttachment(image_id="img-1", media_type="image/png", data_base64="AAAA")

        async with httpx.AsyncClient(base_url="https://openai.test/v1") as http:
            built = client.build_http_request(http, _request(images=(image,)))

        content = json.loads(built.content)["messages"][-1]["content"]
        assert content[0] == {"type": "text", "text": "Hello"}
        assert content[1]["image_url"]["url"] == "data:image/png;base64,AAAA"


class TestAnthropicClient:
    @pytest.mark.asyncio
    async def test_streams_and_sends_system_prompt_separately(
        self,
        timeouts: AdaptiveTimeoutService,
        recording_transport: Callable[..., tuple[httpx.MockTransport, list[httpx.Request]]],
    ) -> None:
        body = (
            b"event: message_start\n"
            + sse_body({"type": "message_start", "message": {"usage": {"input_tokens": 11}}})
            + b"event: content_block_delta\n"
            + sse_body(
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}}
            )
            + sse_body(
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": "end_turn"},
                    "usage": {"output_tokens": 3},
                },
                {"type": "message_stop"},
            )
        )
        transport, seen = recording_transport(lambda request: httpx.Response(200, content=body))
        client = AnthropicClient(
            "ak-test", timeouts=timeouts, base_url="https://anthropic.test", transport=transport
        )

        async with client:
            text, usage = await _drain(
                client.stream_chat(
                    _request(
                        ChatMessage(role="system", content="Be brief."),
                        ChatMessage(role="user", content="Hello"),
                    )
                )
            )

        assert text == "Hi"
        assert (usage.input_tokens, usage.output_tokens) == (11, 3)
        sent = seen[0]
        assert sent.url.path == "/v1/messages"
        assert sent.headers["x-api-key"] == "ak-test"
        assert sent.headers["anthropic-version"] == "2023-06-01"
        payload = json.loads(sent.content)
        assert payload["system"] == "Be brief."
        assert payload["messages"] == [{"role": "user", "content": "Hello"}]


class TestGeminiClient:
    @pytest.mark.asyncio
    async def test_streams_from_model_path(
        self,
        timeouts: AdaptiveTimeoutService,
        recording_transport: Callable[..., tuple[httpx.MockTransport, list[httpx.Request]]],
    ) -> None:
        transport, seen = recording_transport(
            lambda request: httpx.Response(200, content=gemini_stream("Hello", " world"))
        )
        client = GeminiClient(
            "g-test",
            timeouts=timeouts,
            base_url="https://gemini.test/v1beta",
            transport=transport,
        )

        async with client:
            text, usage = await _drain(
                client.stream_chat(
                    _request(
                        ChatMessage(role="user", content="Hi"),
                        ChatMessage(role="assistant", content="Hello!"),
                        ChatMessage(role="user", content="Again"),
                    )
                )
            )

        assert text == "Hello world"
        assert (usage.input_tokens, usage.output_tokens) == (5, 2)
        sent = seen[0]
        assert sent.url.path == "/v1beta/models/test-model:streamGenerateContent"
        assert sent.url.params["alt"] == "sse"
        assert sent.headers["x-goog-api-key"] == "g-test"
        roles = [content["role"] for content in json.loads(sent.content)["contents"]]
        assert roles == ["user", "model", "user"]


class TestUpstreamFailures:
    @pytest.mark.asyncio
    async def test_retryable_status_with_retry_after(
        self, timeouts: AdaptiveTimeoutService
    ) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                503,
                headers={"retry-after": "7"},
                json={"error": {"message": "overloaded"}},
            )
        )
        client = OpenAIClient("sk-test", timeouts=timeouts, transport=transport)

        with pytest.raises(ProviderError) as exc_info:
            await _drain(client.stream_chat(_request()))
        await client.aclose()

        error = exc_info.value
        assert error.retryable
        assert error.upstream_status == 503
        assert error.retry_after == 7
        assert "overloaded" in error.message

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self, timeouts: AdaptiveTimeoutService) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(400, text="bad request"))
        client = AnthropicClient("ak-test", timeouts=timeouts, transport=transport)

        with pytest.raises(ProviderError) as exc_info:
            await _drain(client.stream_chat(_request()))
        await client.aclose()

        assert not exc_info.value.retryable
        assert "bad request" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self, timeouts: AdaptiveTimeoutService) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = GeminiClient("g-test", timeouts=timeouts, transport=httpx.MockTransport(refuse))

        with pytest.raises(ProviderError) as exc_info:
            await _drain(client.stream_chat(_request()))
        await client.aclose()

        assert exc_info.value.retryable
        assert exc_info.value.upstream_status is None

    @pytest.mark.asyncio
    async def test_connect_timeout(self, timeouts: AdaptiveTimeoutService) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(2)
            return httpx.Response(200)

        client = OpenAIClient("sk-test", timeouts=timeouts, transport=httpx.MockTransport(slow))

        with pytest.raises(GatewayTimeoutError) as exc_info:
            await _drain(client.stream_chat(_request()))
        await client.aclose()

        assert exc_info.value.error_code == ErrorCode.CONNECT_TIMEOUT
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_inactivity_timeout(self, timeouts: AdaptiveTimeoutService) -> None:
        async def stalled_body() -> AsyncIterator[bytes]:
            yield sse_body({"choices": [{"delta": {"content": "Hel"}}]})
            await asyncio.sleep(2)
            yield sse_body({"choices": [{"delta": {"content": "lo"}}]})

        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=stalled_body()))
        client = OpenAIClient("sk-test", timeouts=timeouts, transport=transport)

        received: list[str | None] = []
        with pytest.raises(GatewayTimeoutError) as exc_info:
            async for chunk in client.stream_chat(_request()):
                received.append(chunk.text)
        await client.aclose()

        assert received == ["Hel"]
        assert exc_info.value.error_code == ErrorCode.STREAM_INACTIVITY_TIMEOUT

    @pytest.mark.asyncio
    async def test_closed_client_refuses_new_streams(
        self, timeouts: AdaptiveTimeoutService
    ) -> None:
        client = OpenAIClient("sk-test", timeouts=timeouts)
        await client.aclose()

        with pytest.raises(RuntimeError):
            await _drain(client.stream_chat(_request()))


class TestLLMClientFactory:
    def test_creates_only_configured_providers(
        self, make_config: Callable[..., GatewayConfig], timeouts: AdaptiveTimeoutService
    ) -> None:
        config = make_config(openai={"api_key": "sk-test"})

        clients = LLMClientFactory.create_enabled(config, timeouts)

        assert set(clients) == {"openai", "gemini"}
        assert all(isinstance(c, LLMStreamClientProtocol) for c in clients.values())

    def test_rejects_unconfigured_provider(
        self, make_config: Callable[..., GatewayConfig], timeouts: AdaptiveTimeoutService
    ) -> None:
        with pytest.raises(ValueError, match="not configured"):
            LLMClientFactory.create("anthropic", make_config(), timeouts)

    def test_rejects_unknown_provider(
        self, make_config: Callable[..., GatewayConfig], timeouts: AdaptiveTimeoutService
    ) -> None:
        with pytest.raises(ValueError, match="Invalid LLM provider"):
            LLMClientFactory.create("mistral", make_config(), timeouts)
