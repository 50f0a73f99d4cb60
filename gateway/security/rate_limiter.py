"""Per-caller sliding-window rate limiting."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gateway.observability.metrics import record_rate_limited

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    max_requests: int = 60  # Maximum admitted requests per window
    window_seconds: float = 60.0  # Trailing window length
    enabled: bool = True


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class CallerRateLimiter:
    """Sliding-window limiter keyed by authenticated caller id.

    A request is admitted iff fewer than ``max_requests`` admissions fall in the
    trailing window. Rejected requests are not recorded, so a caller hammering
    the endpoint does not extend their own lockout.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or RateLimitConfig()
        self._clock = clock
        self._caller_requests: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def check_limit(self, caller_id: str) -> RateLimitDecision:
        """Check the caller's window and record the request if admitted."""
        if not self._config.enabled:
            return RateLimitDecision(allowed=True, remaining=self._config.max_requests)

        async with self._lock:
            now = self._clock()
            caller_queue = self._caller_requests[caller_id]
            self._expire(caller_queue, now)

            if len(caller_queue) >= self._config.max_requests:
                oldest_request = caller_queue[0]
                retry_after = max(
                    1, math.ceil(oldest_request + self._config.window_seconds - now)
                )
                logger.warning(
                    "rate_limit_exceeded",
                    extra={
                        "caller_id": caller_id,
                        "current_load": len(caller_queue),
                        "max_requests": self._config.max_requests,
                        "window_seconds": self._config.window_seconds,
                        "retry_after": retry_after,
                    },
                )
                record_rate_limited()
                return RateLimitDecision(allowed=False, retry_after=retry_after)

            caller_queue.append(now)
            remaining = self._config.max_requests - len(caller_queue)
            logger.debug(
                "rate_limit_check_passed",
                extra={"caller_id": caller_id, "remaining": remaining},
            )
            return RateLimitDecision(allowed=True, remaining=remaining)

    async def cleanup_expired(self) -> int:
        """Drop callers whose whole window has expired.

        Returns:
            Number of callers removed
        """
        async with self._lock:
            now = self._clock()
            idle: list[str] = []
            for caller_id, caller_queue in self._caller_requests.items():
                self._expire(caller_queue, now)
                if not caller_queue:
                    idle.append(caller_id)
            for caller_id in idle:
                del self._caller_requests[caller_id]

        if idle:
            logger.debug("rate_limit_cleanup", extra={"removed_callers": len(idle)})
        return len(idle)

    def _expire(self, caller_queue: deque[float], now: float) -> None:
        cutoff_time = now - self._config.window_seconds
        while caller_queue and caller_queue[0] <= cutoff_time:
            caller_queue.popleft()
