"""Chat request orchestration.

``ChatGateway`` wires the per-request pipeline together:

    rate limit -> deduplication -> routing -> image resolution
        -> retried upstream stream -> normalized events

and produces the event sequence the HTTP layer serializes as Server-Sent
Events: ``metadata``, any number of ``text`` (and ``debug``) events, then a
terminal ``done`` or ``error``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from gateway.adapters.llm.factory import LLMClientFactory
from gateway.adapters.storage import StorageImageResolver, UnconfiguredImageResolver
from gateway.api.context import current_request_context
from gateway.api.exceptions import (
    AppError,
    ClientDisconnectedError,
    InternalError,
    RateLimitError,
)
from gateway.core.async_utils import cancel_and_wait, raise_if_cancelled
from gateway.core.logging_utils import truncate_log_content
from gateway.models.llm.llm_models import ProviderRequest, UsageMetrics
from gateway.observability.metrics import record_request, record_usage
from gateway.security.rate_limiter import CallerRateLimiter, RateLimitConfig
from gateway.services.adaptive_timeout import AdaptiveTimeoutService
from gateway.services.deduplicator import (
    RequestDeduplicator,
    SharedStream,
    SharedStreamCancelledError,
    build_dedup_key,
)
from gateway.services.provider_router import ProviderRouter, RouteDecision, profiles_from_config
from gateway.services.search_handler import PlaceholderSearchHandler
from gateway.utils.circuit_breaker import CircuitBreakerRegistry, CircuitState
from gateway.utils.retry_utils import RetryOrchestrator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    import httpx

    from gateway.adapters.llm.protocol import LLMStreamClientProtocol
    from gateway.adapters.storage import ImageResolver
    from gateway.api.context import RequestContext
    from gateway.config import GatewayConfig
    from gateway.models.llm.llm_models import ChatMessage
    from gateway.services.search_handler import SearchHandler

logger = logging.getLogger(__name__)

MODE_CHAT = "chat"
MODE_SEARCH_ASSIST = "search_assist"


@dataclass(frozen=True)
class GatewayEvent:
    """One outbound stream event.

    ``data`` is a string for ``text`` events and a JSON-serializable dict for
    every other kind.
    """

    event: str
    data: Any
    error: AppError | None = field(default=None, compare=False, repr=False)

    @property
    def is_error(self) -> bool:
        return self.event == "error"

    @classmethod
    def from_error(cls, error: AppError) -> GatewayEvent:
        return cls("error", error.to_payload(), error=error)


@dataclass(frozen=True)
class ChatCommand:
    """A validated, authenticated chat request."""

    caller_id: str
    messages: tuple[ChatMessage, ...]
    image_ids: tuple[str, ...] = ()
    conversation_id: str | None = None
    mode: str = MODE_CHAT
    preferred_provider: str | None = None
    idempotency_key: str | None = None
    debug: bool = False

    @property
    def last_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""


def _completed_successfully(stream: SharedStream[GatewayEvent]) -> bool:
    events = stream.events
    return bool(events) and events[-1].event == "done"


class ChatGateway:
    """Owns the process-wide pipeline state and runs chat requests through it."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        clients: Mapping[str, LLMStreamClientProtocol],
        breakers: CircuitBreakerRegistry,
        router: ProviderRouter,
        retry: RetryOrchestrator,
        rate_limiter: CallerRateLimiter,
        deduplicator: RequestDeduplicator,
        image_resolver: ImageResolver,
        search_handler: SearchHandler,
    ) -> None:
        self._config = config
        self._clients = dict(clients)
        self._breakers = breakers
        self._router = router
        self._retry = retry
        self._rate_limiter = rate_limiter
        self._dedup = deduplicator
        self._images = image_resolver
        self._search = search_handler
        self._debug_enabled = bool(config.runtime.debug_secret)
        self._maintenance_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        image_resolver: ImageResolver | None = None,
        search_handler: SearchHandler | None = None,
    ) -> ChatGateway:
        """Build the gateway and all of its collaborators from configuration.

        Args:
            config: Validated gateway configuration.
            transport: Optional httpx transport shared by every upstream client.
            image_resolver: Overrides the configured image store resolver.
            search_handler: Overrides the placeholder search handler.
        """
        timeouts = AdaptiveTimeoutService(config.timeouts)
        breakers = CircuitBreakerRegistry(config.circuit_breaker)
        retry = RetryOrchestrator(config.retry)
        clients = LLMClientFactory.create_enabled(config, timeouts, transport=transport)
        router = ProviderRouter(
            profiles_from_config(config),
            breakers,
            default_provider=config.runtime.default_provider,
        )
        rate_limiter = CallerRateLimiter(
            RateLimitConfig(
                max_requests=config.api_limits.max_requests,
                window_seconds=config.api_limits.window_seconds,
                enabled=config.runtime.enable_rate_limiting,
            )
        )
        # A stream cannot legitimately outlive every attempt's total timeout
        max_duration = config.timeouts.total_timeout_sec * (config.retry.max_retries + 1)
        deduplicator = RequestDeduplicator(
            ttl_seconds=config.api_limits.dedup_window_seconds,
            max_request_duration=max_duration,
            enabled=config.runtime.enable_request_deduplication,
        )
        if image_resolver is None:
            if config.image_store.enabled:
                image_resolver = StorageImageResolver(
                    config.image_store,
                    retry,
                    max_image_size_bytes=config.request_limits.max_image_size_bytes,
                    transport=transport,
                )
            else:
                image_resolver = UnconfiguredImageResolver()

        logger.info(
            "chat_gateway_initialized",
            extra={
                "providers": sorted(clients),
                "default_provider": config.runtime.default_provider,
                "circuit_breaker_enabled": config.circuit_breaker.enabled,
                "deduplication_enabled": config.runtime.enable_request_deduplication,
                "rate_limiting_enabled": config.runtime.enable_rate_limiting,
            },
        )
        return cls(
            config,
            clients=clients,
            breakers=breakers,
            router=router,
            retry=retry,
            rate_limiter=rate_limiter,
            deduplicator=deduplicator,
            image_resolver=image_resolver,
            search_handler=search_handler or PlaceholderSearchHandler(),
        )

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def router(self) -> ProviderRouter:
        return self._router

    @property
    def deduplicator(self) -> RequestDeduplicator:
        return self._dedup

    @property
    def rate_limiter(self) -> CallerRateLimiter:
        return self._rate_limiter

    async def start(self) -> None:
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(), name="gateway_maintenance"
            )

    async def aclose(self) -> None:
        await cancel_and_wait(self._maintenance_task)
        self._maintenance_task = None
        await self._dedup.aclose()
        for provider, client in self._clients.items():
            try:
                await client.aclose()
            except Exception as exc:
                logger.warning(
                    "llm_client_close_failed", extra={"provider": provider, "error": str(exc)}
                )
        await self._images.aclose()

    async def enforce_rate_limit(self, caller_id: str) -> None:
        """Raises RateLimitError when the caller has exhausted their window."""
        decision = await self._rate_limiter.check_limit(caller_id)
        if not decision.allowed:
            raise RateLimitError(decision.retry_after)

    async def open_stream(self, command: ChatCommand) -> AsyncIterator[GatewayEvent]:
        """Admit ``command`` and return its event stream.

        Rate limiting happens here, before any event exists, so a rejection
        surfaces as an exception rather than a stream ``error`` event.

        Raises:
            RateLimitError: If the caller is over their request budget.
        """
        await self.enforce_rate_limit(command.caller_id)

        key = build_dedup_key(
            command.caller_id,
            command.messages,
            command.image_ids,
            idempotency_key=command.idempotency_key,
        )
        context = current_request_context()
        stream, joined = self._dedup.share_stream(
            key,
            lambda: self._produce(command, context),
            cacheable=_completed_successfully,
        )
        if joined:
            logger.info("chat_request_deduplicated", extra={"dedup_key": key[:16]})
        return self._subscribe(stream, command, context, joined=joined)

    async def search(self, command: ChatCommand) -> dict[str, Any]:
        await self.enforce_rate_limit(command.caller_id)
        return await self._search.search(
            command.last_user_message,
            caller_id=command.caller_id,
            messages=command.messages,
            conversation_id=command.conversation_id,
        )

    def health(self) -> tuple[bool, dict[str, Any]]:
        """Report provider availability for the health endpoint."""
        providers = []
        available = False
        for name, profile in self._router.profiles.items():
            state = self._breakers.get(name).state
            if profile.enabled and state != CircuitState.OPEN:
                available = True
            providers.append(
                {"name": name, "state": state.value.upper(), "enabled": profile.enabled}
            )
        status = "OK" if available else "DEGRADED"
        return available, {"status": status, "providers": providers}

    async def _subscribe(
        self,
        stream: SharedStream[GatewayEvent],
        command: ChatCommand,
        context: RequestContext | None,
        *,
        joined: bool,
    ) -> AsyncIterator[GatewayEvent]:
        try:
            async with aclosing(stream.subscribe()) as events:
                async for event in events:
                    if event.event == "debug" and not command.debug:
                        continue
                    if event.event == "metadata" and joined and context is not None:
                        event = replace(
                            event,
                            data={
                                **event.data,
                                "requestId": context.request_id,
                                "traceId": context.trace_id,
                                "deduplicated": True,
                            },
                        )
                    yield event
        except SharedStreamCancelledError:
            logger.warning("shared_stream_aborted", extra={"caller_id": command.caller_id})
            yield GatewayEvent.from_error(InternalError("Request was aborted before completion"))

    async def _produce(
        self, command: ChatCommand, context: RequestContext | None
    ) -> AsyncIterator[GatewayEvent]:
        started = time.monotonic()
        provider: str | None = None
        timings: dict[str, float] = {}

        # Failures up to here precede metadata, so the caller gets a plain JSON error
        try:
            decision = self._router.decide_route(
                command.messages, len(command.image_ids), command.preferred_provider
            )
            provider = decision.provider
            timings["routing_ms"] = _elapsed_ms(started)
            images = await self._images.resolve(command.caller_id, command.image_ids)
            timings["images_ms"] = round(_elapsed_ms(started) - timings["routing_ms"], 1)
        except Exception as exc:
            error = exc if isinstance(exc, AppError) else InternalError()
            if error is not exc:
                logger.exception("chat_request_preparation_failed", extra={"provider": provider})
            self._log_failure(error, provider, started)
            yield GatewayEvent.from_error(error)
            return

        yield GatewayEvent("metadata", self._metadata(decision, command, context))
        if self._debug_enabled:
            yield GatewayEvent(
                "debug",
                {
                    "stage": "routing",
                    "task": decision.task.value,
                    "reasoning": decision.reasoning,
                    "candidates": list(decision.candidates),
                    "breakers": {
                        name: stats["state"] for name, stats in self._breakers.snapshot().items()
                    },
                },
            )

        usage = UsageMetrics()
        first_token_ms: float | None = None
        try:
            request = ProviderRequest(
                messages=command.messages,
                model=decision.model,
                max_output_tokens=decision.profile.max_output_tokens,
                images=images,
            )
            if self._debug_enabled:
                yield GatewayEvent("debug", self._payload_preview(request))

            client = self._clients.get(provider)
            if client is None:
                msg = f"No client configured for provider {provider}"
                raise InternalError(msg)

            upstream = self._retry.stream(
                lambda: client.stream_chat(request),
                breaker=self._breakers.get(provider),
                operation=f"{provider}_stream",
            )
            async with aclosing(upstream) as chunks:
                async for chunk in chunks:
                    if chunk.usage is not None:
                        usage = usage.merge(chunk.usage)
                    if chunk.text:
                        if first_token_ms is None:
                            first_token_ms = _elapsed_ms(started)
                        yield GatewayEvent("text", chunk.text)
        except asyncio.CancelledError:
            disconnect = ClientDisconnectedError()
            logger.info(
                "client_disconnected",
                extra={
                    "provider": provider,
                    "error_code": disconnect.error_code.value,
                    "status_code": disconnect.status_code,
                    "duration_ms": _elapsed_ms(started),
                },
            )
            record_request(provider or "none", "cancelled", time.monotonic() - started)
            raise
        except Exception as exc:
            raise_if_cancelled(exc)
            error = exc if isinstance(exc, AppError) else InternalError()
            if error is not exc:
                logger.exception("chat_stream_unexpected_error", extra={"provider": provider})
            self._log_failure(error, provider, started, forwarded_text=first_token_ms is not None)
            yield GatewayEvent.from_error(error)
            return

        usage = usage.priced(decision.profile)
        duration_ms = _elapsed_ms(started)
        record_usage(provider, usage.input_tokens, usage.output_tokens, usage.cost_usd)
        record_request(provider, "success", duration_ms / 1000)
        logger.info(
            "chat_stream_completed",
            extra={
                "provider": provider,
                "model": decision.model,
                "duration_ms": duration_ms,
                "first_token_ms": first_token_ms,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "cost_usd": usage.cost_usd,
            },
        )
        if self._debug_enabled:
            yield GatewayEvent(
                "debug",
                {
                    "stage": "timing",
                    **timings,
                    "first_token_ms": first_token_ms,
                    "total_ms": duration_ms,
                },
            )
        yield GatewayEvent(
            "done",
            {
                "usage": usage.to_payload(),
                "provider": provider,
                "model": decision.model,
                "durationMs": duration_ms,
            },
        )

    @staticmethod
    def _metadata(
        decision: RouteDecision, command: ChatCommand, context: RequestContext | None
    ) -> dict[str, Any]:
        return {
            "provider": decision.provider,
            "model": decision.model,
            "reasoning": decision.reasoning,
            "task": decision.task.value,
            "requestId": context.request_id if context else None,
            "traceId": context.trace_id if context else None,
            "conversationId": command.conversation_id,
            "mode": command.mode,
        }

    def _payload_preview(self, request: ProviderRequest) -> dict[str, Any]:
        preview = {
            "model": request.model,
            "max_output_tokens": request.max_output_tokens,
            "messages": [m.model_dump() for m in request.messages],
            "images": [{"id": i.image_id, "media_type": i.media_type} for i in request.images],
        }
        return {
            "stage": "payload",
            "preview": truncate_log_content(
                json.dumps(preview, ensure_ascii=False),
                self._config.request_limits.max_trace_log_length,
            ),
        }

    @staticmethod
    def _log_failure(
        error: AppError, provider: str | None, started: float, *, forwarded_text: bool = False
    ) -> None:
        log = logger.warning if error.status_code < 500 else logger.error
        log(
            "chat_stream_failed",
            extra={
                "provider": provider,
                "error_type": error.error_type.value,
                "error_code": error.error_code.value,
                "error": error.message,
                "retryable": error.retryable,
                "forwarded_text": forwarded_text,
                "duration_ms": _elapsed_ms(started),
            },
        )
        record_request(provider or "none", "error", time.monotonic() - started)

    async def _maintenance_loop(self) -> None:
        interval = self._config.api_limits.maintenance_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                stale, expired = self._dedup.sweep()
                callers = await self._rate_limiter.cleanup_expired()
            except Exception as exc:
                raise_if_cancelled(exc)
                logger.exception("gateway_maintenance_failed")
                continue
            if stale or expired or callers:
                logger.debug(
                    "gateway_maintenance_completed",
                    extra={
                        "stale_requests": stale,
                        "expired_cache_entries": expired,
                        "idle_callers": callers,
                    },
                )


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 1)
