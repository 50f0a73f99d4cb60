"""Streaming LLM client protocol shared by every provider adapter."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gateway.models.llm.llm_models import ProviderRequest, StreamChunk


@runtime_checkable
class LLMStreamClientProtocol(Protocol):
    """Interface the chat pipeline relies on.

    Implementations open one upstream streaming call per ``stream_chat``
    invocation and yield normalized chunks in upstream order. Failures surface
    as ``AppError`` subclasses (``ProviderError``, ``GatewayTimeoutError``,
    ``StreamParseError``) so the retry layer can classify them.
    """

    @property
    def provider_name(self) -> str:
        """Return the provider identifier ("anthropic", "openai", "gemini")."""
        ...

    def stream_chat(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        """Open an upstream stream for ``request`` and yield its chunks.

        Closing the returned iterator early closes the upstream connection.
        """
        ...

    async def aclose(self) -> None:
        """Close the client and release pooled connections."""
        ...
