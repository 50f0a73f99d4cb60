"""Adaptive upstream timeouts learned from recent provider latency.

Each provider keeps a bounded window of recent connection latencies and
time-to-first-token samples. Timeouts follow the p95 of that window, scaled by
a safety multiplier, and never drop below the configured floors.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gateway.core.logging_utils import TRACE_LEVEL
from gateway.observability.metrics import record_upstream_latency

if TYPE_CHECKING:
    from gateway.config.adaptive_timeout import AdaptiveTimeoutConfig

logger = logging.getLogger(__name__)

CONNECT = "connect"
FIRST_TOKEN = "first_token"


@dataclass(frozen=True)
class TimeoutEstimate:
    """Result of timeout estimation with the data it was based on."""

    timeout_sec: float
    source: str  # "floor" or "p95"
    sample_count: int = 0
    p95_ms: float | None = None


def percentile(samples: list[float], fraction: float) -> float:
    """Nearest-rank percentile of ``samples`` (which need not be sorted)."""
    if not samples:
        msg = "percentile of an empty sample set"
        raise ValueError(msg)
    ordered = sorted(samples)
    rank = max(1, math.ceil(fraction * len(ordered)))
    return ordered[rank - 1]


class AdaptiveTimeoutService:
    """Per-provider rolling latency windows and the timeouts derived from them."""

    def __init__(self, config: AdaptiveTimeoutConfig) -> None:
        self._config = config
        self._samples: dict[tuple[str, str], deque[float]] = defaultdict(
            lambda: deque(maxlen=config.sample_size)
        )

    @property
    def total_timeout_sec(self) -> float:
        return self._config.total_timeout_sec

    def record_connect_latency(self, provider: str, latency_sec: float) -> None:
        self._record(provider, CONNECT, latency_sec)

    def record_first_token_latency(self, provider: str, latency_sec: float) -> None:
        self._record(provider, FIRST_TOKEN, latency_sec)

    def connection_timeout(self, provider: str) -> TimeoutEstimate:
        return self._estimate(provider, CONNECT, self._config.connect_timeout_sec)

    def inactivity_timeout(self, provider: str) -> TimeoutEstimate:
        return self._estimate(provider, FIRST_TOKEN, self._config.inactivity_timeout_sec)

    def sample_count(self, provider: str, kind: str) -> int:
        samples = self._samples.get((provider, kind))
        return len(samples) if samples else 0

    def _record(self, provider: str, kind: str, latency_sec: float) -> None:
        if latency_sec < 0 or math.isnan(latency_sec):
            return
        self._samples[(provider, kind)].append(latency_sec)
        record_upstream_latency(provider, kind, latency_sec)

    def _estimate(self, provider: str, kind: str, floor: float) -> TimeoutEstimate:
        samples = list(self._samples.get((provider, kind), ()))
        if len(samples) < self._config.min_samples:
            return TimeoutEstimate(timeout_sec=floor, source="floor", sample_count=len(samples))

        p95 = percentile(samples, 0.95)
        timeout = max(floor, p95 * self._config.multiplier)
        timeout = min(timeout, self._config.total_timeout_sec)
        estimate = TimeoutEstimate(
            timeout_sec=timeout,
            source="p95" if timeout > floor else "floor",
            sample_count=len(samples),
            p95_ms=p95 * 1000,
        )
        logger.log(
            TRACE_LEVEL,
            "adaptive_timeout_estimated",
            extra={
                "provider": provider,
                "kind": kind,
                "timeout_sec": round(timeout, 3),
                "p95_ms": round(p95 * 1000, 1),
                "sample_count": len(samples),
            },
        )
        return estimate
