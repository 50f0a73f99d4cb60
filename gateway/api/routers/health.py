"""Health and metrics endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response

from gateway.api.dependencies import get_chat_gateway
from gateway.observability.metrics import get_metrics, get_metrics_content_type
from gateway.services.chat_gateway import ChatGateway

router = APIRouter()


@router.get("/health")
async def health_check(gateway: ChatGateway = Depends(get_chat_gateway)):
    """Report whether any enabled provider can currently take traffic.

    Returns 200 with ``OK`` when at least one can, otherwise 503 ``DEGRADED``.
    """
    available, body = gateway.health()
    return JSONResponse(body, status_code=200 if available else 503)


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus exposition."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
