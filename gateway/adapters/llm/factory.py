"""LLM client factory for creating provider-specific streaming clients."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from gateway.config import VALID_PROVIDERS

if TYPE_CHECKING:
    import httpx

    from gateway.adapters.llm.protocol import LLMStreamClientProtocol
    from gateway.config import GatewayConfig
    from gateway.services.adaptive_timeout import AdaptiveTimeoutService

logger = logging.getLogger(__name__)


class LLMClientFactory:
    """Factory for creating streaming clients from gateway configuration.

    Usage:
        clients = LLMClientFactory.create_enabled(config, timeouts)
        async for chunk in clients["anthropic"].stream_chat(request):
            ...
    """

    @staticmethod
    def create(
        provider: str,
        config: GatewayConfig,
        timeouts: AdaptiveTimeoutService,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> LLMStreamClientProtocol:
        """Create a client for one provider.

        Raises:
            ValueError: If the provider is unknown or has no API key configured.
        """
        provider = provider.lower().strip()
        if provider not in VALID_PROVIDERS:
            msg = f"Invalid LLM provider: {provider}. Must be one of {list(VALID_PROVIDERS)}"
            raise ValueError(msg)

        provider_config = config.provider_config(provider)
        if not provider_config.enabled:
            msg = f"{provider} API key is not configured"
            raise ValueError(msg)

        logger.info("llm_client_factory_creating", extra={"provider": provider})

        if provider == "anthropic":
            from gateway.adapters.llm.anthropic import AnthropicClient

            return AnthropicClient(
                config.anthropic.api_key,
                timeouts=timeouts,
                base_url=config.anthropic.base_url,
                anthropic_version=config.anthropic.api_version,
                transport=transport,
            )
        if provider == "openai":
            from gateway.adapters.llm.openai import OpenAIClient

            return OpenAIClient(
                config.openai.api_key,
                timeouts=timeouts,
                base_url=config.openai.base_url,
                organization=config.openai.organization,
                transport=transport,
            )

        from gateway.adapters.llm.gemini import GeminiClient

        return GeminiClient(
            config.gemini.api_key,
            timeouts=timeouts,
            base_url=config.gemini.base_url,
            transport=transport,
        )

    @staticmethod
    def create_enabled(
        config: GatewayConfig,
        timeouts: AdaptiveTimeoutService,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> dict[str, LLMStreamClientProtocol]:
        """Create clients for every provider that has an API key."""
        return {
            provider: LLMClientFactory.create(provider, config, timeouts, transport=transport)
            for provider in VALID_PROVIDERS
            if config.provider_config(provider).enabled
        }
