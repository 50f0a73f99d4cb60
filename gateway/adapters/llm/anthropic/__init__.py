"""Anthropic Messages API streaming adapter."""

from gateway.adapters.llm.anthropic.client import AnthropicClient

__all__ = ["AnthropicClient"]
