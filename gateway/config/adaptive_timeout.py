"""Configuration for upstream timeouts and their adaptive estimation."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from ._validators import _parse_number


class AdaptiveTimeoutConfig(BaseModel):
    """Static timeout floors plus the rolling-percentile parameters.

    Connection and inactivity timeouts start at their floors and grow to
    ``p95 * multiplier`` once enough samples have been observed for a provider.
    The total stream timeout is a hard cap and never adapts.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    connect_timeout_sec: float = Field(
        default=15.0,
        validation_alias="API_CONNECT_TIMEOUT_SECONDS",
        description="Floor for time to receive upstream response headers",
    )
    inactivity_timeout_sec: float = Field(
        default=25.0,
        validation_alias="STREAM_INACTIVITY_TIMEOUT_SECONDS",
        description="Floor for the gap between two upstream stream chunks",
    )
    total_timeout_sec: float = Field(
        default=180.0,
        validation_alias="STREAM_TOTAL_TIMEOUT_SECONDS",
        description="Hard cap on the duration of one upstream stream",
    )
    multiplier: float = Field(
        default=1.5,
        validation_alias="ADAPTIVE_TIMEOUT_MULTIPLIER",
        description="Multiplier applied to the p95 latency",
    )
    sample_size: int = Field(
        default=100,
        validation_alias="ADAPTIVE_TIMEOUT_SAMPLE_SIZE",
        description="Number of most recent samples kept per provider",
    )
    min_samples: int = Field(
        default=5,
        validation_alias="ADAPTIVE_TIMEOUT_MIN_SAMPLES",
        description="Samples required before the p95 is trusted over the floor",
    )

    @field_validator("connect_timeout_sec", "inactivity_timeout_sec", mode="before")
    @classmethod
    def _validate_floor(cls, value: Any, info: ValidationInfo) -> float:
        return _parse_number(
            value,
            default=cls.model_fields[info.field_name].default,
            name=info.field_name.replace("_", " ").capitalize(),
            minimum=0.1,
            maximum=600.0,
        )

    @field_validator("total_timeout_sec", mode="before")
    @classmethod
    def _validate_total(cls, value: Any) -> float:
        return _parse_number(
            value, default=180.0, name="Total stream timeout", minimum=1.0, maximum=3600.0
        )

    @field_validator("multiplier", mode="before")
    @classmethod
    def _validate_multiplier(cls, value: Any) -> float:
        return _parse_number(
            value, default=1.5, name="Adaptive timeout multiplier", minimum=1.0, maximum=10.0
        )

    @field_validator("sample_size", "min_samples", mode="before")
    @classmethod
    def _validate_samples(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        try:
            parsed = int(str(value if value not in (None, "") else default))
        except ValueError as exc:
            msg = f"{info.field_name.replace('_', ' ')} must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 1 or parsed > 10000:
            msg = f"{info.field_name.replace('_', ' ').capitalize()} must be between 1 and 10000"
            raise ValueError(msg)
        return parsed

    @model_validator(mode="after")
    def _validate_ordering(self) -> AdaptiveTimeoutConfig:
        if self.min_samples > self.sample_size:
            msg = "ADAPTIVE_TIMEOUT_MIN_SAMPLES cannot exceed ADAPTIVE_TIMEOUT_SAMPLE_SIZE"
            raise ValueError(msg)
        if self.inactivity_timeout_sec > self.total_timeout_sec:
            msg = "Inactivity timeout cannot exceed the total stream timeout"
            raise ValueError(msg)
        return self
