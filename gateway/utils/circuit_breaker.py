"""Per-provider circuit breakers for upstream LLM calls."""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Any

from gateway.observability.metrics import record_circuit_breaker_state

if TYPE_CHECKING:
    from collections.abc import Callable

    from gateway.config import CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failures exceeded threshold, blocking requests
    HALF_OPEN = "half_open"  # Testing if the provider recovered


class CircuitBreaker:
    """Circuit breaker guarding a single upstream provider.

    States:
    - CLOSED: requests flow; failures inside ``failure_window`` are counted and a
      success clears the count. Reaching ``failure_threshold`` opens the circuit.
    - OPEN: requests are refused. Once ``timeout`` seconds have passed since the
      last failure, the next read of ``state`` reports HALF_OPEN.
    - HALF_OPEN: at most ``half_open_max_calls`` trial requests may be in flight.
      ``success_threshold`` consecutive successes close the circuit, any failure
      reopens it.

    All methods are synchronous, so state changes never interleave with network
    waits on the event loop.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 3,
        failure_window: float = 60.0,
        half_open_max_calls: int | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            name: Provider name, used in logs and metrics
            failure_threshold: Number of failures in the window before opening
            timeout: Seconds after the last failure before entering half-open
            success_threshold: Successful trials needed in half-open to close
            failure_window: Seconds over which CLOSED-state failures are counted
            half_open_max_calls: Concurrent trial requests allowed in half-open;
                defaults to ``success_threshold``
            enabled: When False the breaker always allows and never trips
            clock: Monotonic time source
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_window = failure_window
        self.half_open_max_calls = half_open_max_calls or success_threshold
        self.enabled = enabled
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self.success_count = 0
        self.half_open_in_flight = 0
        self.opened_at: float | None = None
        self.last_failure_time: float | None = None

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self.last_failure_time is not None
            and self._clock() - self.last_failure_time >= self.timeout
        ):
            logger.info(
                "circuit_breaker_half_open",
                extra={"provider": self.name, "timeout": self.timeout},
            )
            self._transition(CircuitState.HALF_OPEN)
            self.success_count = 0
            self.half_open_in_flight = 0
        return self._state

    @property
    def failure_count(self) -> int:
        self._prune_failures(self._clock())
        return len(self._failures)

    @property
    def is_open(self) -> bool:
        return self.enabled and self.state == CircuitState.OPEN

    def can_proceed(self) -> bool:
        """Check whether an attempt may be sent upstream.

        In HALF_OPEN a True answer reserves one trial slot; the caller must
        follow up with ``record_success``, ``record_failure`` or ``release_trial``.
        """
        if not self.enabled:
            return True

        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.OPEN:
            return False

        if self.half_open_in_flight >= self.half_open_max_calls:
            return False
        self.half_open_in_flight += 1
        return True

    def record_success(self) -> None:
        if not self.enabled:
            return

        state = self.state
        if state == CircuitState.CLOSED:
            self._failures.clear()
            return
        if state != CircuitState.HALF_OPEN:
            # Late success of a call that started before the circuit opened
            return

        self._release_slot()
        self.success_count += 1
        if self.success_count >= self.success_threshold:
            logger.info(
                "circuit_breaker_closed",
                extra={
                    "provider": self.name,
                    "success_count": self.success_count,
                    "threshold": self.success_threshold,
                },
            )
            self._transition(CircuitState.CLOSED)
            self._failures.clear()
            self.success_count = 0
            self.opened_at = None
            self.last_failure_time = None

    def record_failure(self) -> None:
        if not self.enabled:
            return

        now = self._clock()
        state = self.state
        self.last_failure_time = now

        if state == CircuitState.HALF_OPEN:
            self._release_slot()
            logger.warning(
                "circuit_breaker_reopened",
                extra={"provider": self.name, "success_count": self.success_count},
            )
            self._transition(CircuitState.OPEN)
            self.opened_at = now
            self.success_count = 0
            return

        if state == CircuitState.OPEN:
            return

        self._failures.append(now)
        self._prune_failures(now)
        if len(self._failures) >= self.failure_threshold:
            logger.warning(
                "circuit_breaker_opened",
                extra={
                    "provider": self.name,
                    "failure_count": len(self._failures),
                    "threshold": self.failure_threshold,
                },
            )
            self._transition(CircuitState.OPEN)
            self.opened_at = now

    def release_trial(self) -> None:
        """Give back a half-open slot for an attempt that ended without a verdict."""
        if self.enabled and self._state == CircuitState.HALF_OPEN:
            self._release_slot()

    def retry_after(self) -> int | None:
        """Seconds until the circuit will admit trial requests, if it is open."""
        if not self.is_open or self.last_failure_time is None:
            return None
        remaining = self.timeout - (self._clock() - self.last_failure_time)
        return max(1, math.ceil(remaining))

    def reset(self) -> None:
        """Reset circuit breaker to initial state."""
        logger.info(
            "circuit_breaker_reset",
            extra={"provider": self.name, "previous_state": self._state.value},
        )
        self._transition(CircuitState.CLOSED)
        self._failures.clear()
        self.success_count = 0
        self.half_open_in_flight = 0
        self.opened_at = None
        self.last_failure_time = None

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "enabled": self.enabled,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "half_open_in_flight": self.half_open_in_flight,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "opened_at": self.opened_at,
            "last_failure_time": self.last_failure_time,
        }

    def _release_slot(self) -> None:
        if self.half_open_in_flight > 0:
            self.half_open_in_flight -= 1

    def _prune_failures(self, now: float) -> None:
        cutoff = now - self.failure_window
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()

    def _transition(self, new_state: CircuitState) -> None:
        self._state = new_state
        record_circuit_breaker_state(self.name, new_state.value)


class CircuitBreakerRegistry:
    """Process-wide map of provider name to its breaker."""

    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, provider: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider)
        if breaker is None:
            breaker = CircuitBreaker(
                provider,
                failure_threshold=self._config.failure_threshold,
                timeout=self._config.timeout_seconds,
                success_threshold=self._config.success_threshold,
                failure_window=self._config.failure_window_seconds,
                enabled=self._config.enabled,
                clock=self._clock,
            )
            self._breakers[provider] = breaker
            record_circuit_breaker_state(provider, CircuitState.CLOSED.value)
        return breaker

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}
