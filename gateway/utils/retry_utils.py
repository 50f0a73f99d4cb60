"""Retry orchestration for upstream calls.

Retries only errors that are marked retryable, waits with full-jitter
exponential backoff between attempts and reports every attempt's outcome to
the provider's circuit breaker.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import TYPE_CHECKING, TypeVar

import httpx

from gateway.api.exceptions import AppError, CircuitBreakerError, ErrorType
from gateway.core.backoff import sleep_backoff

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from gateway.config import RetryConfig
    from gateway.models.llm.llm_models import StreamChunk
    from gateway.utils.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether another attempt against the same provider can help.

    Open circuits and an empty provider pool are retryable for the caller, but
    not by hammering the same provider again, so they are excluded here.
    """
    if isinstance(error, AppError):
        if error.error_type in (ErrorType.CIRCUIT_BREAKER, ErrorType.NO_PROVIDERS):
            return False
        return error.retryable
    return isinstance(error, httpx.TransportError)


def counts_as_provider_failure(error: BaseException) -> bool:
    """Only upstream-side failures count against a provider's breaker.

    Client errors, content blocks and client disconnects do not.
    """
    if isinstance(error, AppError):
        return error.counts_as_provider_failure
    return isinstance(error, httpx.TransportError)


class RetryOrchestrator:
    """Runs upstream attempts under a retry policy and a circuit breaker."""

    def __init__(self, config: RetryConfig) -> None:
        self._config = config

    @property
    def max_retries(self) -> int:
        return self._config.max_retries

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        breaker: CircuitBreaker | None = None,
        operation: str = "upstream_call",
    ) -> T:
        """Await ``func`` with retries.

        Raises:
            CircuitBreakerError: If the breaker refuses an attempt.
            Exception: The last error once it is fatal or retries are exhausted.
        """
        attempt = 0
        while True:
            attempt += 1
            self._check_breaker(breaker)
            try:
                result = await func()
            except BaseException as exc:
                self._report_failure(breaker, exc)
                if not self._should_retry(exc, attempt, operation):
                    raise
                await self._backoff(attempt, exc, operation)
                continue

            if breaker is not None:
                breaker.record_success()
            if attempt > 1:
                logger.info(
                    "retry_succeeded", extra={"operation": operation, "attempt": attempt}
                )
            return result

    async def stream(
        self,
        open_stream: Callable[[], AsyncIterator[StreamChunk]],
        *,
        breaker: CircuitBreaker | None = None,
        operation: str = "upstream_stream",
    ) -> AsyncIterator[StreamChunk]:
        """Yield chunks from ``open_stream()``, retrying failed attempts.

        Once any text has been forwarded an attempt can no longer be retried,
        because the caller has already seen part of the answer.
        """
        attempt = 0
        while True:
            attempt += 1
            self._check_breaker(breaker)
            forwarded_text = False
            chunks = open_stream()
            try:
                async with aclosing(chunks):
                    async for chunk in chunks:
                        if chunk.text:
                            forwarded_text = True
                        yield chunk
            except BaseException as exc:
                self._report_failure(breaker, exc)
                if forwarded_text or not self._should_retry(exc, attempt, operation):
                    raise
                await self._backoff(attempt, exc, operation)
                continue

            if breaker is not None:
                breaker.record_success()
            if attempt > 1:
                logger.info("retry_succeeded", extra={"operation": operation, "attempt": attempt})
            return

    @staticmethod
    def _check_breaker(breaker: CircuitBreaker | None) -> None:
        if breaker is not None and not breaker.can_proceed():
            logger.debug(
                "circuit_breaker_rejected",
                extra={"provider": breaker.name, "circuit_state": breaker.state.value},
            )
            raise CircuitBreakerError(breaker.name, breaker.retry_after())

    @staticmethod
    def _report_failure(breaker: CircuitBreaker | None, exc: BaseException) -> None:
        if breaker is None:
            return
        if counts_as_provider_failure(exc):
            breaker.record_failure()
        else:
            breaker.release_trial()

    def _should_retry(self, exc: BaseException, attempt: int, operation: str) -> bool:
        if not is_retryable_error(exc):
            return False
        if attempt > self._config.max_retries:
            logger.debug(
                "retry_exhausted",
                extra={
                    "operation": operation,
                    "error": str(exc),
                    "total_attempts": attempt,
                },
            )
            return False
        return True

    async def _backoff(self, attempt: int, exc: BaseException, operation: str) -> None:
        delay = await sleep_backoff(
            attempt,
            base_delay=self._config.base_delay_sec,
            min_delay=self._config.min_jitter_sec,
            max_delay=self._config.max_delay_sec,
        )
        logger.info(
            "retrying_after_transient_error",
            extra={
                "operation": operation,
                "error": str(exc),
                "error_code": getattr(getattr(exc, "error_code", None), "value", None),
                "attempt": attempt,
                "max_retries": self._config.max_retries,
                "delay_seconds": round(delay, 3),
            },
        )
