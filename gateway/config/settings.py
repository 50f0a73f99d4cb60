from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from ._validators import VALID_PROVIDERS, _parse_bool, _parse_csv
from .adaptive_timeout import AdaptiveTimeoutConfig
from .api import ApiLimitsConfig, AuthConfig, RequestLimitsConfig
from .circuit_breaker import CircuitBreakerConfig
from .integrations import ImageStoreConfig
from .llm import AnthropicConfig, GeminiConfig, OpenAIConfig
from .retry import RetryConfig

logger = logging.getLogger(__name__)


class RuntimeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    debug_secret: str | None = Field(default=None, validation_alias="DEBUG_SECRET_HEADER_VALUE")
    enable_request_deduplication: bool = Field(
        default=True, validation_alias="ENABLE_REQUEST_DEDUPLICATION"
    )
    enable_rate_limiting: bool = Field(default=True, validation_alias="ENABLE_RATE_LIMITING")
    default_provider: str = Field(default="gemini", validation_alias="DEFAULT_PROVIDER")
    allowed_origins: tuple[str, ...] = Field(
        default_factory=lambda: ("*",), validation_alias="ALLOWED_ORIGINS"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Any) -> str:
        log_level = str(value or "INFO").upper()
        if log_level == "WARN":
            log_level = "WARNING"
        valid_levels = {"TRACE", "DEBUG", "INFO", "WARNING", "ERROR"}
        if log_level not in valid_levels:
            msg = f"Invalid log level: {value}. Must be one of {sorted(valid_levels)}"
            raise ValueError(msg)
        return log_level

    @field_validator("log_file", "debug_secret", mode="before")
    @classmethod
    def _strip_optional(cls, value: Any) -> str | None:
        if value is None:
            return None
        trimmed = str(value).strip()
        return trimmed or None

    @field_validator("enable_request_deduplication", "enable_rate_limiting", mode="before")
    @classmethod
    def _validate_toggle(cls, value: Any) -> bool:
        return _parse_bool(value, default=True)

    @field_validator("default_provider", mode="before")
    @classmethod
    def _validate_default_provider(cls, value: Any) -> str:
        provider = str(value or "gemini").lower().strip()
        if provider not in VALID_PROVIDERS:
            msg = f"Invalid default provider: {provider}. Must be one of {list(VALID_PROVIDERS)}"
            raise ValueError(msg)
        return provider

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: Any) -> tuple[str, ...]:
        return _parse_csv(value) or ("*",)


@dataclass(frozen=True)
class GatewayConfig:
    runtime: RuntimeConfig
    auth: AuthConfig
    anthropic: AnthropicConfig
    openai: OpenAIConfig
    gemini: GeminiConfig
    api_limits: ApiLimitsConfig
    request_limits: RequestLimitsConfig
    circuit_breaker: CircuitBreakerConfig
    timeouts: AdaptiveTimeoutConfig
    retry: RetryConfig
    image_store: ImageStoreConfig

    def provider_config(self, provider: str) -> AnthropicConfig | OpenAIConfig | GeminiConfig:
        if provider not in VALID_PROVIDERS:
            msg = f"Unknown provider: {provider}"
            raise ValueError(msg)
        return getattr(self, provider)


class Settings(BaseSettings):
    """Gateway settings loaded from environment variables and an optional .env file.

    Nested models are populated by matching validation_alias on each field.
    """

    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    auth: AuthConfig
    anthropic: AnthropicConfig = Field(default_factory=AnthropicConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    api_limits: ApiLimitsConfig = Field(default_factory=ApiLimitsConfig)
    request_limits: RequestLimitsConfig = Field(default_factory=RequestLimitsConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    timeouts: AdaptiveTimeoutConfig = Field(default_factory=AdaptiveTimeoutConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    image_store: ImageStoreConfig = Field(default_factory=ImageStoreConfig)

    @model_validator(mode="before")
    @classmethod
    def _build_nested_from_env(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Build nested config objects from flat environment variables.

        Constructor arguments take precedence over the process environment.
        """
        if not isinstance(data, dict):
            return data

        result = dict(data)
        merged_source = {**os.environ, **data}

        for field_name, field_info in cls.model_fields.items():
            annotation = field_info.annotation
            if not isinstance(annotation, type) or not issubclass(annotation, BaseModel):
                continue

            nested_data: dict[str, Any] = {}
            for nested_field_name, nested_field in annotation.model_fields.items():
                env_value = cls._resolve_env_value(merged_source, nested_field)
                if env_value is not None:
                    nested_data[nested_field_name] = env_value

            if nested_data:
                if field_name in result and isinstance(result[field_name], dict):
                    result[field_name] = {**nested_data, **result[field_name]}
                else:
                    result[field_name] = nested_data

        return result

    @staticmethod
    def _resolve_env_value(data: dict[str, Any], field: Any) -> Any | None:
        aliases: list[str] = []
        alias = field.validation_alias
        if isinstance(alias, AliasChoices):
            aliases.extend(choice for choice in alias.choices if isinstance(choice, str))
        elif isinstance(alias, str):
            aliases.append(alias)
        if field.alias:
            aliases.append(field.alias)

        for name in aliases:
            if name in data:
                return data[name]
        return None

    @model_validator(mode="after")
    def _warn_without_providers(self) -> Settings:
        if not any(cfg.enabled for cfg in (self.anthropic, self.openai, self.gemini)):
            logger.warning(
                "no_provider_keys_configured",
                extra={"providers": list(VALID_PROVIDERS)},
            )
        return self

    def as_gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            runtime=self.runtime,
            auth=self.auth,
            anthropic=self.anthropic,
            openai=self.openai,
            gemini=self.gemini,
            api_limits=self.api_limits,
            request_limits=self.request_limits,
            circuit_breaker=self.circuit_breaker,
            timeouts=self.timeouts,
            retry=self.retry,
            image_store=self.image_store,
        )


def load_config(**overrides: Any) -> GatewayConfig:
    """Load and validate gateway configuration.

    Sources, in order of precedence: keyword overrides (nested dicts keyed by
    section name), environment variables, then the ``.env`` file.

    Raises:
        RuntimeError: If configuration validation fails. The process should not
            start serving in that case.
    """
    try:
        settings = Settings(**overrides)
    except (ValidationError, RuntimeError) as exc:
        msg = f"Configuration validation failed: {exc}"
        raise RuntimeError(msg) from exc
    return settings.as_gateway_config()
