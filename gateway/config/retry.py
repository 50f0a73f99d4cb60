from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ._validators import _parse_number


class RetryConfig(BaseModel):
    """Full-jitter exponential backoff for retryable upstream failures."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_retries: int = Field(default=3, validation_alias="MAX_RETRIES")
    base_delay_sec: float = Field(default=0.5, validation_alias="RETRY_BASE_DELAY_SECONDS")
    min_jitter_sec: float = Field(default=0.1, validation_alias="RETRY_MIN_JITTER_SECONDS")
    max_delay_sec: float = Field(default=10.0, validation_alias="RETRY_MAX_DELAY_SECONDS")

    @field_validator("max_retries", mode="before")
    @classmethod
    def _validate_max_retries(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 3))
        except ValueError as exc:
            msg = "Max retries must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 0 or parsed > 10:
            msg = "Max retries must be between 0 and 10"
            raise ValueError(msg)
        return parsed

    @field_validator("base_delay_sec", "min_jitter_sec", "max_delay_sec", mode="before")
    @classmethod
    def _validate_delay(cls, value: Any, info: ValidationInfo) -> float:
        return _parse_number(
            value,
            default=cls.model_fields[info.field_name].default,
            name=info.field_name.replace("_", " ").capitalize(),
            minimum=0.0,
            maximum=300.0,
        )
