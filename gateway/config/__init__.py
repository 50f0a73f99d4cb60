from __future__ import annotations

from ._validators import VALID_PROVIDERS, validate_model_name
from .adaptive_timeout import AdaptiveTimeoutConfig
from .api import ApiLimitsConfig, AuthConfig, RequestLimitsConfig
from .circuit_breaker import CircuitBreakerConfig
from .integrations import ImageStoreConfig
from .llm import AnthropicConfig, GeminiConfig, OpenAIConfig
from .retry import RetryConfig
from .settings import GatewayConfig, RuntimeConfig, Settings, load_config

__all__ = [
    "VALID_PROVIDERS",
    "AdaptiveTimeoutConfig",
    "AnthropicConfig",
    "ApiLimitsConfig",
    "AuthConfig",
    "CircuitBreakerConfig",
    "GatewayConfig",
    "GeminiConfig",
    "ImageStoreConfig",
    "OpenAIConfig",
    "RequestLimitsConfig",
    "RetryConfig",
    "RuntimeConfig",
    "Settings",
    "load_config",
    "validate_model_name",
]
