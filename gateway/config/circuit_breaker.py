from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ._validators import _parse_bool


class CircuitBreakerConfig(BaseModel):
    """Per-provider circuit breaker configuration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = Field(
        default=True,
        validation_alias="ENABLE_CIRCUIT_BREAKER",
        description="Gate upstream calls behind per-provider circuit breakers",
    )
    failure_threshold: int = Field(
        default=5,
        validation_alias="CIRCUIT_BREAKER_THRESHOLD",
        description="Number of failures in the window before opening the circuit",
    )
    timeout_seconds: float = Field(
        default=60.0,
        validation_alias="CIRCUIT_BREAKER_TIMEOUT_SECONDS",
        description="Seconds after the last failure before entering half-open state",
    )
    success_threshold: int = Field(
        default=3,
        validation_alias="CIRCUIT_BREAKER_RECOVERY_SUCCESSES",
        description="Consecutive half-open successes needed to close",
    )
    failure_window_seconds: float = Field(
        default=60.0,
        validation_alias="CIRCUIT_BREAKER_FAILURE_WINDOW_SECONDS",
        description="Sliding window in which failures are counted",
    )

    @field_validator("enabled", mode="before")
    @classmethod
    def _validate_enabled(cls, value: Any) -> bool:
        return _parse_bool(value, default=True)

    @field_validator("failure_threshold", "success_threshold", mode="before")
    @classmethod
    def _validate_threshold(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        try:
            parsed = int(str(value if value not in (None, "") else default))
        except ValueError as exc:
            msg = f"{info.field_name.replace('_', ' ')} must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 1 or parsed > 100:
            msg = f"{info.field_name.replace('_', ' ').capitalize()} must be between 1 and 100"
            raise ValueError(msg)
        return parsed

    @field_validator("timeout_seconds", "failure_window_seconds", mode="before")
    @classmethod
    def _validate_timeout(cls, value: Any, info: ValidationInfo) -> float:
        try:
            parsed = float(str(value if value not in (None, "") else 60.0))
        except ValueError as exc:
            msg = "Circuit breaker timeout must be a valid number"
            raise ValueError(msg) from exc
        if parsed < 1.0 or parsed > 600.0:
            label = info.field_name.replace("_", " ").capitalize()
            msg = f"{label} must be between 1 and 600 seconds"
            raise ValueError(msg)
        return parsed
