"""Base streaming client with shared HTTP handling for all providers.

Subclasses supply the request builder and the line parser; this class owns the
httpx client, the three upstream timeouts and the mapping of transport and
HTTP failures onto the gateway error taxonomy.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import aclosing
from importlib.util import find_spec
from typing import TYPE_CHECKING

import httpx

from gateway.adapters.llm.streaming import normalize_stream
from gateway.api.exceptions import ErrorCode, GatewayTimeoutError, ProviderError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gateway.models.llm.llm_models import ProviderRequest, StreamChunk
    from gateway.services.adaptive_timeout import AdaptiveTimeoutService

logger = logging.getLogger(__name__)

# Check for HTTP/2 support
HTTP2_AVAILABLE = find_spec("h2") is not None

if not HTTP2_AVAILABLE:
    logger.warning(
        "HTTP/2 support disabled because the 'h2' package is not installed; "
        "falling back to HTTP/1.1"
    )


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return max(0, int(float(value)))
    except ValueError:
        return None


class BaseStreamingClient:
    """Base class for provider clients that stream over HTTP.

    This class provides:
    - A lazily created, reusable ``httpx.AsyncClient``
    - Connection timeout (time to response headers), inactivity timeout (gap
      between body chunks) and a hard total stream timeout, each raced against
      the upstream read with ``asyncio.wait_for``
    - Latency samples fed back into the adaptive timeout service
    - Upstream error bodies mapped to ``ProviderError``
    """

    _provider_name: str = "unknown"

    def __init__(
        self,
        *,
        base_url: str,
        timeouts: AdaptiveTimeoutService,
        max_connections: int = 20,
        max_keepalive_connections: int = 10,
        keepalive_expiry: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the base client.

        Args:
            base_url: Base URL for the provider API.
            timeouts: Adaptive timeout service shared by all providers.
            max_connections: Maximum concurrent connections.
            max_keepalive_connections: Maximum keepalive connections.
            keepalive_expiry: Keepalive connection expiry in seconds.
            transport: Optional httpx transport, used to stub the upstream.
        """
        self._base_url = base_url
        self._timeouts = timeouts
        self._transport = transport
        self._limits = httpx.Limits(
            max_keepalive_connections=max_keepalive_connections,
            max_connections=max_connections,
            keepalive_expiry=keepalive_expiry,
        )
        self._client: httpx.AsyncClient | None = None
        self._closed = False

    @property
    def provider_name(self) -> str:
        return self._provider_name

    async def aclose(self) -> None:
        """Close the client and release resources."""
        if self._closed:
            return
        self._closed = True
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_http_request(
        self, client: httpx.AsyncClient, request: ProviderRequest
    ) -> httpx.Request:
        raise NotImplementedError

    def parse_line(self, line: str) -> StreamChunk | None:
        raise NotImplementedError

    async def stream_chat(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        client = self._ensure_client()
        http_request = self.build_http_request(client, request)
        started = time.monotonic()

        response = await self._open_stream(client, http_request)
        first_token_seen = False
        chunks = normalize_stream(
            self._read_body(response, started), self.parse_line, self.provider_name
        )
        try:
            async with aclosing(chunks):
                async for chunk in chunks:
                    if chunk.text and not first_token_seen:
                        first_token_seen = True
                        self._timeouts.record_first_token_latency(
                            self.provider_name, time.monotonic() - started
                        )
                    yield chunk
        finally:
            await response.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        """Lazily construct the AsyncClient instance."""
        if self._closed:
            msg = "Client has been closed"
            raise RuntimeError(msg)
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                # Per-phase limits are enforced around each read instead
                timeout=httpx.Timeout(None, connect=self._timeouts.total_timeout_sec),
                limits=self._limits,
                http2=HTTP2_AVAILABLE and self._transport is None,
                transport=self._transport,
            )
        return self._client

    async def _open_stream(
        self, client: httpx.AsyncClient, http_request: httpx.Request
    ) -> httpx.Response:
        estimate = self._timeouts.connection_timeout(self.provider_name)
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.send(http_request, stream=True), timeout=estimate.timeout_sec
            )
        except (TimeoutError, httpx.TimeoutException):
            raise GatewayTimeoutError(
                self.provider_name, ErrorCode.CONNECT_TIMEOUT, estimate.timeout_sec
            ) from None
        except httpx.TransportError as exc:
            msg = f"Connection to {self.provider_name} failed: {exc}"
            raise ProviderError(self.provider_name, msg) from exc

        self._timeouts.record_connect_latency(self.provider_name, time.monotonic() - started)

        if response.status_code >= 400:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            raise ProviderError(
                self.provider_name,
                self._error_message(response.status_code, body),
                upstream_status=response.status_code,
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )

        logger.debug(
            "upstream_stream_opened",
            extra={
                "provider": self.provider_name,
                "status": response.status_code,
                "connect_timeout_sec": round(estimate.timeout_sec, 3),
                "timeout_source": estimate.source,
            },
        )
        return response

    async def _read_body(self, response: httpx.Response, started: float) -> AsyncIterator[bytes]:
        total = self._timeouts.total_timeout_sec
        inactivity = self._timeouts.inactivity_timeout(self.provider_name).timeout_sec
        body = response.aiter_bytes()

        while True:
            remaining = total - (time.monotonic() - started)
            if remaining <= 0:
                raise GatewayTimeoutError(
                    self.provider_name, ErrorCode.STREAM_TOTAL_TIMEOUT, total
                )
            wait = min(inactivity, remaining)
            try:
                chunk = await asyncio.wait_for(anext(body), timeout=wait)
            except StopAsyncIteration:
                return
            except (TimeoutError, httpx.TimeoutException):
                if wait < inactivity:
                    raise GatewayTimeoutError(
                        self.provider_name, ErrorCode.STREAM_TOTAL_TIMEOUT, total
                    ) from None
                raise GatewayTimeoutError(
                    self.provider_name, ErrorCode.STREAM_INACTIVITY_TIMEOUT, inactivity
                ) from None
            except httpx.TransportError as exc:
                msg = f"Stream from {self.provider_name} interrupted: {exc}"
                raise ProviderError(self.provider_name, msg) from exc
            if chunk:
                yield chunk

    def _error_message(self, status_code: int, body: bytes) -> str:
        """Extract the provider's error message from an error response body."""
        detail = ""
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            detail = body[:200].decode("utf-8", errors="replace").strip()
        else:
            error = data.get("error") if isinstance(data, dict) else None
            if isinstance(error, dict):
                detail = str(error.get("message") or error.get("type") or "")
            elif isinstance(error, str):
                detail = error
        base = f"{self.provider_name} returned HTTP {status_code}"
        return f"{base}: {detail}" if detail else base
