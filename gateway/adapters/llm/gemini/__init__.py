"""Gemini streamGenerateContent adapter."""

from gateway.adapters.llm.gemini.client import GeminiClient

__all__ = ["GeminiClient"]
