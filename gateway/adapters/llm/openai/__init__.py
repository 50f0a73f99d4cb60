"""OpenAI chat completions streaming adapter."""

from gateway.adapters.llm.openai.client import OpenAIClient

__all__ = ["OpenAIClient"]
