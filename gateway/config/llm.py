from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ._validators import _ensure_api_key, _parse_number, validate_model_name


class _ProviderConfigBase(BaseModel):
    """Shared validators for the per-provider sections.

    Subclasses declare their own fields so each env alias stays explicit.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)
    display_name: ClassVar[str] = "Provider"

    @property
    def enabled(self) -> bool:
        return bool(getattr(self, "api_key", ""))

    @field_validator("api_key", mode="before", check_fields=False)
    @classmethod
    def _validate_api_key(cls, value: Any, info: ValidationInfo) -> str:
        if value in (None, ""):
            return ""
        return _ensure_api_key(str(value), name=cls.display_name)

    @field_validator("model", mode="before", check_fields=False)
    @classmethod
    def _validate_model(cls, value: Any, info: ValidationInfo) -> str:
        if value in (None, ""):
            return cls.model_fields[info.field_name].default
        return validate_model_name(str(value))

    @field_validator("max_output_tokens", mode="before", check_fields=False)
    @classmethod
    def _validate_max_output_tokens(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        try:
            tokens = int(str(value if value not in (None, "") else default))
        except ValueError as exc:
            msg = "Max output tokens must be a valid integer"
            raise ValueError(msg) from exc
        if tokens <= 0 or tokens > 200000:
            msg = "Max output tokens must be between 1 and 200000"
            raise ValueError(msg)
        return tokens

    @field_validator(
        "cost_per_1k_input", "cost_per_1k_output", mode="before", check_fields=False
    )
    @classmethod
    def _validate_cost(cls, value: Any, info: ValidationInfo) -> float:
        default = cls.model_fields[info.field_name].default
        return _parse_number(
            value,
            default=default,
            name=info.field_name.replace("_", " ").capitalize(),
            minimum=0.0,
            maximum=1000.0,
        )

    @field_validator("base_url", mode="before", check_fields=False)
    @classmethod
    def _validate_base_url(cls, value: Any, info: ValidationInfo) -> str:
        if value in (None, ""):
            return cls.model_fields[info.field_name].default
        url = str(value).strip().rstrip("/")
        if not url.startswith(("http://", "https://")):
            msg = f"{cls.display_name} base URL must start with http:// or https://"
            raise ValueError(msg)
        return url


class AnthropicConfig(_ProviderConfigBase):
    """Anthropic Messages API configuration."""

    display_name: ClassVar[str] = "Anthropic"

    api_key: str = Field(default="", validation_alias="ANTHROPIC_API_KEY")
    model: str = Field(default="claude-sonnet-4-5-20250929", validation_alias="ANTHROPIC_MODEL")
    max_output_tokens: int = Field(default=4096, validation_alias="ANTHROPIC_MAX_OUTPUT_TOKENS")
    cost_per_1k_input: float = Field(default=0.003, validation_alias="ANTHROPIC_COST_PER_1K_INPUT")
    cost_per_1k_output: float = Field(
        default=0.015, validation_alias="ANTHROPIC_COST_PER_1K_OUTPUT"
    )
    base_url: str = Field(
        default="https://api.anthropic.com", validation_alias="ANTHROPIC_BASE_URL"
    )
    api_version: str = Field(default="2023-06-01", validation_alias="ANTHROPIC_API_VERSION")


class OpenAIConfig(_ProviderConfigBase):
    """OpenAI chat completions configuration."""

    display_name: ClassVar[str] = "OpenAI"

    api_key: str = Field(default="", validation_alias="OPENAI_API_KEY")
    model: str = Field(default="gpt-4o", validation_alias="OPENAI_MODEL")
    max_output_tokens: int = Field(default=4096, validation_alias="OPENAI_MAX_OUTPUT_TOKENS")
    cost_per_1k_input: float = Field(default=0.0025, validation_alias="OPENAI_COST_PER_1K_INPUT")
    cost_per_1k_output: float = Field(default=0.01, validation_alias="OPENAI_COST_PER_1K_OUTPUT")
    base_url: str = Field(default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
    organization: str | None = Field(default=None, validation_alias="OPENAI_ORGANIZATION")

    @field_validator("organization", mode="before")
    @classmethod
    def _validate_organization(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        org = str(value).strip()
        if len(org) > 100:
            msg = "OpenAI organization ID appears too long"
            raise ValueError(msg)
        return org


class GeminiConfig(_ProviderConfigBase):
    """Google Gemini generateContent configuration."""

    display_name: ClassVar[str] = "Gemini"

    api_key: str = Field(default="", validation_alias="GEMINI_API_KEY")
    model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
    max_output_tokens: int = Field(default=8192, validation_alias="GEMINI_MAX_OUTPUT_TOKENS")
    cost_per_1k_input: float = Field(default=0.0003, validation_alias="GEMINI_COST_PER_1K_INPUT")
    cost_per_1k_output: float = Field(
        default=0.0025, validation_alias="GEMINI_COST_PER_1K_OUTPUT"
    )
    base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        validation_alias="GEMINI_BASE_URL",
    )
