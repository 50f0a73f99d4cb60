"""API dependencies for FastAPI dependency injection."""

from gateway.api.dependencies.gateway import get_chat_gateway, get_gateway_config

__all__ = ["get_chat_gateway", "get_gateway_config"]
