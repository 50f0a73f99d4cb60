"""Multi-provider streaming LLM client layer.

Key components:
- LLMStreamClientProtocol: interface the chat pipeline relies on
- LLMClientFactory: builds provider clients from configuration
- BaseStreamingClient: shared HTTP handling and upstream timeouts
- AnthropicClient, OpenAIClient, GeminiClient: provider adapters
"""

from gateway.adapters.llm.anthropic import AnthropicClient
from gateway.adapters.llm.base_client import BaseStreamingClient
from gateway.adapters.llm.factory import LLMClientFactory
from gateway.adapters.llm.gemini import GeminiClient
from gateway.adapters.llm.openai import OpenAIClient
from gateway.adapters.llm.protocol import LLMStreamClientProtocol

__all__ = [
    "AnthropicClient",
    "BaseStreamingClient",
    "GeminiClient",
    "LLMClientFactory",
    "LLMStreamClientProtocol",
    "OpenAIClient",
]
