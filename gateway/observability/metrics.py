"""Prometheus metrics for the inference gateway.

This module tracks:
- Chat requests by provider and outcome
- Token usage and cost per provider
- Upstream connection and first-token latency
- Circuit breaker states
- Rate limit rejections and deduplication hits

Usage:
    from gateway.observability.metrics import record_request

    record_request(provider="anthropic", status="success", latency_seconds=2.4)
"""

from __future__ import annotations

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Custom registry keeps test processes and library defaults apart
REGISTRY = CollectorRegistry()

REQUESTS_TOTAL = Counter(
    "gateway_chat_requests_total",
    "Chat requests by provider and outcome",
    ["provider", "status"],
    registry=REGISTRY,
)

REQUEST_LATENCY = Histogram(
    "gateway_chat_request_latency_seconds",
    "End-to-end latency of a streamed chat response",
    ["provider"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 180.0],
    registry=REGISTRY,
)

UPSTREAM_LATENCY = Histogram(
    "gateway_upstream_latency_seconds",
    "Upstream latency by phase (connect, first_token)",
    ["provider", "phase"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0],
    registry=REGISTRY,
)

TOKENS_TOTAL = Counter(
    "gateway_tokens_total",
    "Tokens consumed per provider",
    ["provider", "type"],
    registry=REGISTRY,
)

COST_USD_TOTAL = Counter(
    "gateway_cost_usd_total",
    "Estimated upstream cost in USD",
    ["provider"],
    registry=REGISTRY,
)

CIRCUIT_BREAKER_STATE = Gauge(
    "gateway_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["provider"],
    registry=REGISTRY,
)

RATE_LIMITED_TOTAL = Counter(
    "gateway_rate_limited_total",
    "Requests rejected by the per-caller rate limiter",
    registry=REGISTRY,
)

DEDUP_HITS_TOTAL = Counter(
    "gateway_dedup_hits_total",
    "Requests served from an in-flight call or the short-lived result cache",
    ["kind"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST


def record_request(provider: str, status: str, latency_seconds: float | None = None) -> None:
    """Record a finished chat request.

    Args:
        provider: Provider that served the request, or "none"
        status: success, error or cancelled
        latency_seconds: Optional end-to-end latency
    """
    REQUESTS_TOTAL.labels(provider=provider, status=status).inc()
    if latency_seconds is not None:
        REQUEST_LATENCY.labels(provider=provider).observe(latency_seconds)


def record_upstream_latency(provider: str, phase: str, latency_seconds: float) -> None:
    UPSTREAM_LATENCY.labels(provider=provider, phase=phase).observe(latency_seconds)


def record_usage(provider: str, input_tokens: int, output_tokens: int, cost_usd: float) -> None:
    if input_tokens > 0:
        TOKENS_TOTAL.labels(provider=provider, type="input").inc(input_tokens)
    if output_tokens > 0:
        TOKENS_TOTAL.labels(provider=provider, type="output").inc(output_tokens)
    if cost_usd > 0:
        COST_USD_TOTAL.labels(provider=provider).inc(cost_usd)


def record_circuit_breaker_state(provider: str, state: str) -> None:
    """Record circuit breaker state.

    Args:
        provider: Provider name
        state: closed, half_open or open
    """
    state_value = {"closed": 0, "half_open": 1, "open": 2}.get(state, -1)
    CIRCUIT_BREAKER_STATE.labels(provider=provider).set(state_value)


def record_rate_limited() -> None:
    RATE_LIMITED_TOTAL.inc()


def record_dedup_hit(kind: str) -> None:
    """Record a coalesced request; ``kind`` is in_flight or cache."""
    DEDUP_HITS_TOTAL.labels(kind=kind).inc()
