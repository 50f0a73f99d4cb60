"""Error taxonomy shared by the HTTP layer and the streaming pipeline.

Every failure the gateway reports, either as a JSON error body before a stream
opens or as a terminal ``error`` event, is an ``AppError`` carrying a stable
code, an HTTP status and whether retrying can help.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes exposed to callers."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    AUTH_FAILED = "AUTH_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CLIENT_DISCONNECTED = "CLIENT_DISCONNECTED"

    UPSTREAM_API_ERROR = "UPSTREAM_API_ERROR"
    STREAM_PARSE_ERROR = "STREAM_PARSE_ERROR"
    CONTENT_BLOCKED = "CONTENT_BLOCKED"
    CONNECT_TIMEOUT = "CONNECT_TIMEOUT"
    STREAM_INACTIVITY_TIMEOUT = "STREAM_INACTIVITY_TIMEOUT"
    STREAM_TOTAL_TIMEOUT = "STREAM_TOTAL_TIMEOUT"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    NO_PROVIDERS_AVAILABLE = "NO_PROVIDERS_AVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorType(str, Enum):
    """Error kinds, used as ``errorType`` in payloads."""

    VALIDATION = "ValidationError"
    AUTH = "AuthError"
    RATE_LIMIT = "RateLimitError"
    PROVIDER = "ProviderError"
    TIMEOUT = "TimeoutError"
    CIRCUIT_BREAKER = "CircuitBreakerError"
    NO_PROVIDERS = "NoProvidersAvailable"
    CLIENT_DISCONNECTED = "ClientDisconnected"
    INTERNAL = "InternalError"


class AppError(Exception):
    """Base exception for all gateway errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        error_type: ErrorType,
        status_code: int = 500,
        retryable: bool = False,
        retry_after: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.error_type = error_type
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after
        self.details = details or {}

    @property
    def counts_as_provider_failure(self) -> bool:
        """Whether this error should be reported to the owning circuit breaker."""
        return self.retryable and self.error_type in (ErrorType.PROVIDER, ErrorType.TIMEOUT)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "errorType": self.error_type.value,
            "code": self.error_code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        return payload


class ValidationError(AppError):
    """Raised when a request fails schema or business validation."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_FAILED,
            error_type=ErrorType.VALIDATION,
            status_code=400,
            details=details,
        )


class AuthError(AppError):
    """Raised when the bearer identity is missing or invalid."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_FAILED,
            error_type=ErrorType.AUTH,
            status_code=401,
        )


class RateLimitError(AppError):
    def __init__(self, retry_after: int, message: str | None = None):
        super().__init__(
            message=message or f"Rate limit exceeded. Retry after {retry_after} seconds.",
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            error_type=ErrorType.RATE_LIMIT,
            status_code=429,
            retry_after=retry_after,
        )


def is_retryable_status(status_code: int) -> bool:
    """Upstream 429 and 5xx (except 501 Not Implemented) are worth retrying."""
    return status_code == 429 or (status_code >= 500 and status_code != 501)


class ProviderError(AppError):
    """Upstream provider returned an error status or the transport failed.

    ``upstream_status`` is None for network-level failures, which are retryable.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        upstream_status: int | None = None,
        retry_after: int | None = None,
        error_code: ErrorCode = ErrorCode.UPSTREAM_API_ERROR,
        retryable: bool | None = None,
    ):
        if retryable is None:
            retryable = upstream_status is None or is_retryable_status(upstream_status)
        super().__init__(
            message=message,
            error_code=error_code,
            error_type=ErrorType.PROVIDER,
            status_code=502,
            retryable=retryable,
            retry_after=retry_after,
            details={"provider": provider, "upstream_status": upstream_status},
        )
        self.provider = provider
        self.upstream_status = upstream_status


class StreamParseError(ProviderError):
    """A line of the upstream stream could not be decoded."""

    def __init__(self, provider: str, message: str):
        super().__init__(
            provider,
            message,
            error_code=ErrorCode.STREAM_PARSE_ERROR,
            retryable=False,
        )


class ContentBlockedError(ProviderError):
    """The provider refused to produce or finish a response on safety grounds."""

    def __init__(self, provider: str, reason: str):
        super().__init__(
            provider,
            f"Response blocked by {provider}: {reason}",
            error_code=ErrorCode.CONTENT_BLOCKED,
            retryable=False,
        )
        self.reason = reason


class GatewayTimeoutError(AppError):
    """Connection, inactivity or total stream timeout against a provider."""

    def __init__(self, provider: str, error_code: ErrorCode, timeout_sec: float):
        phase = {
            ErrorCode.CONNECT_TIMEOUT: "connecting to",
            ErrorCode.STREAM_INACTIVITY_TIMEOUT: "waiting for data from",
            ErrorCode.STREAM_TOTAL_TIMEOUT: "streaming from",
        }.get(error_code, "calling")
        super().__init__(
            message=f"Timed out after {timeout_sec:.1f}s {phase} {provider}",
            error_code=error_code,
            error_type=ErrorType.TIMEOUT,
            status_code=504,
            retryable=True,
            details={"provider": provider, "timeout_sec": timeout_sec},
        )
        self.provider = provider
        self.timeout_sec = timeout_sec


class CircuitBreakerError(AppError):
    def __init__(self, provider: str, retry_after: int | None = None):
        super().__init__(
            message=f"Provider {provider} is temporarily unavailable",
            error_code=ErrorCode.CIRCUIT_BREAKER_OPEN,
            error_type=ErrorType.CIRCUIT_BREAKER,
            status_code=503,
            retryable=True,
            retry_after=retry_after,
            details={"provider": provider},
        )
        self.provider = provider


class NoProvidersAvailableError(AppError):
    def __init__(self, message: str = "No AI providers are currently available"):
        super().__init__(
            message=message,
            error_code=ErrorCode.NO_PROVIDERS_AVAILABLE,
            error_type=ErrorType.NO_PROVIDERS,
            status_code=503,
            retryable=True,
        )


class ClientDisconnectedError(AppError):
    """The caller went away; never counted against a provider."""

    def __init__(self, message: str = "Client disconnected"):
        super().__init__(
            message=message,
            error_code=ErrorCode.CLIENT_DISCONNECTED,
            error_type=ErrorType.CLIENT_DISCONNECTED,
            status_code=499,
        )


class InternalError(AppError):
    def __init__(self, message: str = "An unexpected error occurred"):
        super().__init__(
            message=message,
            error_code=ErrorCode.INTERNAL_ERROR,
            error_type=ErrorType.INTERNAL,
            status_code=500,
        )
