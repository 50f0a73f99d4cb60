from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ._validators import _parse_number

logger = logging.getLogger(__name__)


class ApiLimitsConfig(BaseModel):
    """Per-caller rate limiting and request coalescing configuration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    window_seconds: int = Field(default=60, validation_alias="RATE_LIMIT_WINDOW_SECONDS")
    max_requests: int = Field(default=60, validation_alias="RATE_LIMIT_MAX_REQUESTS")
    dedup_window_seconds: float = Field(default=5.0, validation_alias="DEDUP_WINDOW_SECONDS")
    maintenance_interval_seconds: float = Field(
        default=30.0, validation_alias="MAINTENANCE_INTERVAL_SECONDS"
    )

    @field_validator("window_seconds", mode="before")
    @classmethod
    def _validate_window(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 60))
        except ValueError as exc:
            msg = "Rate limit window must be a valid integer"
            raise ValueError(msg) from exc
        if parsed <= 0 or parsed > 3600:
            msg = "Rate limit window must be between 1 and 3600 seconds"
            raise ValueError(msg)
        return parsed

    @field_validator("max_requests", mode="before")
    @classmethod
    def _validate_max_requests(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 60))
        except ValueError as exc:
            msg = "Rate limit max requests must be a valid integer"
            raise ValueError(msg) from exc
        if parsed <= 0 or parsed > 10000:
            msg = "Rate limit max requests must be between 1 and 10000"
            raise ValueError(msg)
        return parsed

    @field_validator("dedup_window_seconds", "maintenance_interval_seconds", mode="before")
    @classmethod
    def _validate_intervals(cls, value: Any, info: ValidationInfo) -> float:
        return _parse_number(
            value,
            default=cls.model_fields[info.field_name].default,
            name=info.field_name.replace("_", " ").capitalize(),
            minimum=0.1,
            maximum=3600.0,
        )


class RequestLimitsConfig(BaseModel):
    """Bounds applied to inbound chat payloads."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_message_length: int = Field(default=50000, validation_alias="MAX_MESSAGE_LENGTH")
    max_messages_count: int = Field(default=100, validation_alias="MAX_MESSAGES_COUNT")
    max_image_count: int = Field(default=10, validation_alias="MAX_IMAGE_COUNT")
    max_image_size_bytes: int = Field(
        default=10 * 1024 * 1024, validation_alias="MAX_IMAGE_SIZE_BYTES"
    )
    max_trace_log_length: int = Field(default=5000, validation_alias="MAX_TRACE_LOG_LENGTH")

    @field_validator(
        "max_message_length",
        "max_messages_count",
        "max_image_count",
        "max_image_size_bytes",
        "max_trace_log_length",
        mode="before",
    )
    @classmethod
    def _validate_limits(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        try:
            parsed = int(str(value if value not in (None, "") else default))
        except ValueError as exc:
            msg = f"{info.field_name.replace('_', ' ')} must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 0:
            msg = f"{info.field_name.replace('_', ' ').capitalize()} must not be negative"
            raise ValueError(msg)
        return parsed


class AuthConfig(BaseModel):
    """Bearer token verification settings."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    jwt_secret: str = Field(..., validation_alias="AUTH_JWT_SECRET")
    jwt_audience: str | None = Field(default="authenticated", validation_alias="AUTH_JWT_AUDIENCE")
    jwt_algorithm: str = Field(default="HS256", validation_alias="AUTH_JWT_ALGORITHM")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _validate_jwt_secret(cls, value: Any) -> str:
        secret = str(value or "").strip()
        if not secret:
            msg = "AUTH_JWT_SECRET is required"
            raise ValueError(msg)
        if len(secret) < 32:
            msg = "AUTH_JWT_SECRET must be at least 32 characters"
            raise ValueError(msg)
        if len(secret) > 500:
            msg = "AUTH_JWT_SECRET appears to be too long"
            raise ValueError(msg)
        return secret

    @field_validator("jwt_audience", mode="before")
    @classmethod
    def _validate_audience(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        return str(value).strip()

    @field_validator("jwt_algorithm", mode="before")
    @classmethod
    def _validate_algorithm(cls, value: Any) -> str:
        algorithm = str(value or "HS256").upper()
        if algorithm not in {"HS256", "HS384", "HS512"}:
            msg = f"Unsupported JWT algorithm: {algorithm}"
            raise ValueError(msg)
        return algorithm
