from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)


class ResponseSizeError(ValueError):
    """Raised when a response exceeds the maximum allowed size."""

    def __init__(self, message: str, *, actual_size: int | None = None, max_size: int) -> None:
        super().__init__(message)
        self.actual_size = actual_size
        self.max_size = max_size


def validate_response_size(
    response: httpx.Response,
    max_size_bytes: int,
    service_name: str,
) -> None:
    """Reject a response whose declared Content-Length exceeds the limit.

    Servers may omit or understate the header, so callers that buffer the body
    should also read it through ``read_capped``.

    Raises:
        ResponseSizeError: If the declared size exceeds ``max_size_bytes``
        ValueError: If ``max_size_bytes`` is not a positive integer
    """
    if not isinstance(max_size_bytes, int) or max_size_bytes <= 0:
        msg = f"max_size_bytes must be a positive integer, got {max_size_bytes}"
        raise ValueError(msg)

    content_length_str = response.headers.get("content-length")
    if not content_length_str:
        return

    try:
        content_length = int(content_length_str)
    except ValueError:
        logger.warning(
            "invalid_content_length_header",
            extra={
                "service": service_name,
                "content_length": content_length_str,
                "status_code": response.status_code,
            },
        )
        return

    if content_length > max_size_bytes:
        msg = (
            f"{service_name} response size ({content_length} bytes) "
            f"exceeds limit ({max_size_bytes} bytes)"
        )
        logger.error(
            "response_size_exceeded",
            extra={
                "service": service_name,
                "content_length": content_length,
                "max_size": max_size_bytes,
                "status_code": response.status_code,
            },
        )
        raise ResponseSizeError(msg, actual_size=content_length, max_size=max_size_bytes)


async def read_capped(response: httpx.Response, max_size_bytes: int, service_name: str) -> bytes:
    """Buffer a streamed response body, stopping once it passes the limit."""
    validate_response_size(response, max_size_bytes, service_name)
    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        buffer.extend(chunk)
        if len(buffer) > max_size_bytes:
            msg = f"{service_name} response exceeds limit ({max_size_bytes} bytes)"
            logger.error(
                "response_size_exceeded_no_header",
                extra={
                    "service": service_name,
                    "actual_size": len(buffer),
                    "max_size": max_size_bytes,
                },
            )
            raise ResponseSizeError(msg, actual_size=len(buffer), max_size=max_size_bytes)
    return bytes(buffer)


def bytes_to_mb(size_bytes: int) -> float:
    """Convert bytes to megabytes."""
    return round(size_bytes / (1024 * 1024), 2)
