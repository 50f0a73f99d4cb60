"""Pytest configuration and shared fixtures.

Every test runs against a scrubbed environment so developer API keys never
leak into configuration, and upstream providers are stubbed with
``httpx.MockTransport``.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterator
from typing import Any

import httpx
import jwt
import pytest
from pydantic import BaseModel

from gateway.config import GatewayConfig, Settings, load_config

JWT_SECRET = "test-secret-at-least-32-chars-long-string"


def _config_env_names() -> Iterator[str]:
    for field in Settings.model_fields.values():
        section = field.annotation
        if isinstance(section, type) and issubclass(section, BaseModel):
            for nested in section.model_fields.values():
                if isinstance(nested.validation_alias, str):
                    yield nested.validation_alias


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _config_env_names():
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTH_JWT_SECRET", JWT_SECRET)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_config() -> Callable[..., GatewayConfig]:
    """Build a validated config; keyword args are per-section overrides."""

    def _make(**sections: dict[str, Any]) -> GatewayConfig:
        sections.setdefault("gemini", {"api_key": "test-gemini-key"})
        sections.setdefault("retry", {"base_delay_sec": 0.01, "min_jitter_sec": 0.0})
        return load_config(**sections)

    return _make


@pytest.fixture
def make_token() -> Callable[..., str]:
    def _make(
        sub: str = "caller-1",
        *,
        secret: str = JWT_SECRET,
        expires_in: int = 300,
        audience: str | None = "authenticated",
    ) -> str:
        claims: dict[str, Any] = {"sub": sub, "exp": int(time.time()) + expires_in}
        if audience is not None:
            claims["aud"] = audience
        return jwt.encode(claims, secret, algorithm="HS256")

    return _make


def sse_body(*payloads: dict[str, Any] | str) -> bytes:
    """Encode payloads as ``data:`` lines the way upstream providers send them."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def gemini_stream(*texts: str, input_tokens: int = 5, output_tokens: int = 2) -> bytes:
    chunks: list[dict[str, Any]] = [
        {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
        for text in texts
    ]
    chunks.append(
        {
            "candidates": [{"content": {"parts": []}, "finishReason": "STOP"}],
            "usageMetadata": {
                "promptTokenCount": input_tokens,
                "candidatesTokenCount": output_tokens,
            },
        }
    )
    return sse_body(*chunks)


@pytest.fixture
def gemini_stream_body() -> Callable[..., bytes]:
    return gemini_stream


@pytest.fixture
def sse_encode() -> Callable[..., bytes]:
    return sse_body


def parse_sse(text: str) -> list[tuple[str, str]]:
    """Split an SSE response body into ``(event, data)`` pairs."""
    events = []
    for frame in text.split("\n\n"):
        if not frame.strip():
            continue
        name = "message"
        data_lines = []
        for line in frame.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: ") :]
            elif line.startswith("data: "):
                data_lines.append(line[len("data: ") :])
            elif line == "data:":
                data_lines.append("")
        events.append((name, "\n".join(data_lines)))
    return events


@pytest.fixture
def sse_parse() -> Callable[[str], list[tuple[str, str]]]:
    return parse_sse


@pytest.fixture
def recording_transport() -> Callable[..., tuple[httpx.MockTransport, list[httpx.Request]]]:
    """MockTransport factory that records every request it serves."""

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
    ) -> tuple[httpx.MockTransport, list[httpx.Request]]:
        seen: list[httpx.Request] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        return httpx.MockTransport(_handler), seen

    return _make
