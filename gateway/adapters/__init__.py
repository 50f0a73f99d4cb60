"""Adapters for external systems: upstream LLM providers and image storage."""
