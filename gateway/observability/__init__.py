from __future__ import annotations

from gateway.observability.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_circuit_breaker_state,
    record_dedup_hit,
    record_rate_limited,
    record_request,
    record_upstream_latency,
    record_usage,
)

__all__ = [
    "get_metrics",
    "get_metrics_content_type",
    "record_circuit_breaker_state",
    "record_dedup_hit",
    "record_rate_limited",
    "record_request",
    "record_upstream_latency",
    "record_usage",
]
