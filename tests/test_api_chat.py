"""HTTP-level tests for the chat, health and metrics endpoints."""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Iterator
from contextlib import ExitStack

import httpx
import pytest
from conftest import gemini_stream, parse_sse
from fastapi.testclient import TestClient

from gateway.api.main import create_app
from gateway.api.routers.chat import format_sse, is_debug_authorized
from gateway.config import GatewayConfig
from gateway.services.chat_gateway import ChatGateway, GatewayEvent

ClientFactory = Callable[..., TestClient]


def _body(content: str = "Hello there", **extra: object) -> dict[str, object]:
    return {"messages": [{"role": "user", "content": content}], **extra}


@pytest.fixture
def upstream_calls() -> list[httpx.Request]:
    return []


@pytest.fixture
def client_factory(
    make_config: Callable[..., GatewayConfig], upstream_calls: list[httpx.Request]
) -> Iterator[ClientFactory]:
    """Start an app whose providers answer with ``respond`` (a Gemini stream by default)."""
    with ExitStack() as stack:

        def _make(
            respond: Callable[[httpx.Request], httpx.Response] | None = None,
            **sections: dict[str, object],
        ) -> TestClient:
            def handler(request: httpx.Request) -> httpx.Response:
                upstream_calls.append(request)
                if respond is not None:
                    return respond(request)
                return httpx.Response(200, content=gemini_stream("Hello", " world"))

            config = make_config(**sections)
            gateway = ChatGateway.from_config(config, transport=httpx.MockTransport(handler))
            app = create_app(config, gateway=gateway, configure_logging=False)
            return stack.enter_context(TestClient(app))

        yield _make


@pytest.fixture
def auth_headers(make_token: Callable[..., str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token()}"}


class TestChatStreaming:
    def test_streams_metadata_text_and_done(
        self,
        client_factory: ClientFactory,
        auth_headers: dict[str, str],
        upstream_calls: list[httpx.Request],
    ) -> None:
        client = client_factory()

        response = client.post("/v1/chat", json=_body(), headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["metadata", "text", "text", "done"]

        metadata = json.loads(events[0][1])
        assert metadata["provider"] == "gemini"
        assert metadata["requestId"] == response.headers["x-request-id"]
        assert metadata["traceId"] == response.headers["x-trace-id"]
        assert [data for name, data in events if name == "text"] == ["Hello", " world"]

        done = json.loads(events[-1][1])
        assert done["usage"]["inputTokens"] == 5
        assert done["usage"]["outputTokens"] == 2
        assert len(upstream_calls) == 1

    def test_upstream_failure_after_metadata_is_stream_error(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        client = client_factory(lambda request: httpx.Response(400, text="bad request"))

        response = client.post("/v1/chat", json=_body(), headers=auth_headers)

        assert response.status_code == 200
        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["metadata", "error"]
        error = json.loads(events[-1][1])
        assert error["code"] == "UPSTREAM_API_ERROR"
        assert error["retryable"] is False

    def test_traceparent_is_continued(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        trace_id = "4bf92f3577b34da6a3ce929d0e0e4736"
        client = client_factory()

        response = client.post(
            "/v1/chat",
            json=_body(),
            headers={**auth_headers, "traceparent": f"00-{trace_id}-00f067aa0ba902b7-01"},
        )

        assert response.headers["x-trace-id"] == trace_id
        assert json.loads(parse_sse(response.text)[0][1])["traceId"] == trace_id

    def test_search_assist_returns_json(
        self,
        client_factory: ClientFactory,
        auth_headers: dict[str, str],
        upstream_calls: list[httpx.Request],
    ) -> None:
        client = client_factory()

        response = client.post(
            "/v1/chat", json=_body("find me a recipe", mode="search_assist"), headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["type"] == "search_result"
        assert response.json()["query"] == "find me a recipe"
        assert upstream_calls == []


class TestDebugEvents:
    def test_matching_debug_token_receives_debug_events(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        client = client_factory(runtime={"debug_secret": "s3cret-token"})

        response = client.post(
            "/v1/chat", json=_body(), headers={**auth_headers, "X-Debug-Token": "s3cret-token"}
        )

        names = [name for name, _ in parse_sse(response.text)]
        assert names.count("debug") == 3
        assert names[0] == "metadata"
        assert names[-1] == "done"

    def test_wrong_debug_token_is_ignored(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        client = client_factory(runtime={"debug_secret": "s3cret-token"})

        response = client.post(
            "/v1/chat", json=_body(), headers={**auth_headers, "X-Debug-Token": "guess"}
        )

        assert "debug" not in [name for name, _ in parse_sse(response.text)]

    @pytest.mark.parametrize(
        ("token", "secret", "expected"),
        [
            ("abc", "abc", True),
            ("abc", "abd", False),
            (None, "abc", False),
            ("abc", None, False),
            ("", "", False),
        ],
    )
    def test_is_debug_authorized(
        self, token: str | None, secret: str | None, expected: bool
    ) -> None:
        assert is_debug_authorized(token, secret) is expected


class TestPreStreamErrors:
    def test_missing_token_is_401(
        self, client_factory: ClientFactory, upstream_calls: list[httpx.Request]
    ) -> None:
        client = client_factory()

        response = client.post("/v1/chat", json=_body())

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "AUTH_FAILED"
        assert error["message"] == "Missing bearer token"
        assert response.json()["meta"]["requestId"] == response.headers["x-request-id"]
        assert upstream_calls == []

    @pytest.mark.parametrize(
        "token_kwargs",
        [
            {"secret": "another-secret-that-is-long-enough-to-pass"},
            {"expires_in": -60},
            {"audience": "someone-else"},
        ],
    )
    def test_invalid_token_is_401(
        self,
        client_factory: ClientFactory,
        make_token: Callable[..., str],
        token_kwargs: dict[str, object],
    ) -> None:
        client = client_factory()

        response = client.post(
            "/v1/chat",
            json=_body(),
            headers={"Authorization": f"Bearer {make_token(**token_kwargs)}"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["errorType"] == "AuthError"

    def test_last_message_must_be_from_user(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        client = client_factory()
        body = {
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello!"},
            ]
        }

        response = client.post("/v1/chat", json=body, headers=auth_headers)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_FAILED"
        assert error["details"]["fields"][0]["field"].startswith("body.messages")

    def test_message_length_limit(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        client = client_factory(request_limits={"max_message_length": 10})

        response = client.post("/v1/chat", json=_body("x" * 11), headers=auth_headers)

        assert response.status_code == 400
        assert "exceeds 10 characters" in response.json()["error"]["message"]

    def test_rate_limit_is_429_with_retry_after(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        client = client_factory(api_limits={"max_requests": 1})

        assert client.post("/v1/chat", json=_body("one"), headers=auth_headers).status_code == 200
        response = client.post("/v1/chat", json=_body("two"), headers=auth_headers)

        assert response.status_code == 429
        assert int(response.headers["retry-after"]) >= 1
        error = response.json()["error"]
        assert error["code"] == "RATE_LIMIT_EXCEEDED"
        assert error["retryAfter"] == int(response.headers["retry-after"])

    def test_no_providers_is_503(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        client = client_factory(gemini={})

        response = client.post("/v1/chat", json=_body(), headers=auth_headers)

        assert response.status_code == 503
        assert response.headers["content-type"] == "application/json"
        assert response.json()["error"]["code"] == "NO_PROVIDERS_AVAILABLE"

    def test_images_without_store_is_400(
        self,
        client_factory: ClientFactory,
        auth_headers: dict[str, str],
        upstream_calls: list[httpx.Request],
    ) -> None:
        client = client_factory()

        response = client.post(
            "/v1/chat", json=_body(imageIds=[str(uuid.uuid4())]), headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_FAILED"
        assert upstream_calls == []


class _BrokenVerifier:
    def verify(self, token: str) -> str:
        raise RuntimeError("verifier backend unreachable")


class TestUnexpectedErrors:
    def test_internal_error_keeps_correlation_headers(
        self,
        make_config: Callable[..., GatewayConfig],
        auth_headers: dict[str, str],
    ) -> None:
        app = create_app(
            make_config(),
            identity_verifier=_BrokenVerifier(),
            configure_logging=False,
        )

        with TestClient(app) as client:
            response = client.post("/v1/chat", json=_body(), headers=auth_headers)

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "INTERNAL_ERROR"
        assert "unreachable" not in body["error"]["message"]
        assert body["meta"]["requestId"] == response.headers["x-request-id"]
        assert body["meta"]["traceId"] == response.headers["x-trace-id"]
        assert response.headers["x-content-type-options"] == "nosniff"


class TestHealthAndMetrics:
    def test_health_ok(self, client_factory: ClientFactory) -> None:
        response = client_factory().get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "OK"
        gemini = next(p for p in body["providers"] if p["name"] == "gemini")
        assert gemini == {"name": "gemini", "state": "CLOSED", "enabled": True}

    def test_health_degraded_without_providers(self, client_factory: ClientFactory) -> None:
        response = client_factory(gemini={}).get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "DEGRADED"

    def test_security_headers(self, client_factory: ClientFactory) -> None:
        response = client_factory().get("/health")

        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"
        assert "max-age" in response.headers["strict-transport-security"]
        uuid.UUID(response.headers["x-request-id"])

    def test_metrics_exposition(
        self, client_factory: ClientFactory, auth_headers: dict[str, str]
    ) -> None:
        client = client_factory()
        client.post("/v1/chat", json=_body(), headers=auth_headers)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "gateway_chat_requests_total" in response.text
        assert "gateway_tokens_total" in response.text


class TestFormatSse:
    def test_text_with_newlines_spans_data_lines(self) -> None:
        frame = format_sse(GatewayEvent("text", "line one\nline two"))
        assert frame == "event: text\ndata: line one\ndata: line two\n\n"

    def test_structured_events_are_compact_json(self) -> None:
        frame = format_sse(GatewayEvent("done", {"provider": "gemini", "note": "naïve"}))
        assert frame == 'event: done\ndata: {"provider":"gemini","note":"naïve"}\n\n'

    def test_round_trips_through_sse_parser(self) -> None:
        frame = format_sse(GatewayEvent("text", "a\r\nb\n\nc"))
        assert parse_sse(frame) == [("text", "a\nb\n\nc")]
