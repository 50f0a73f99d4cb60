from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from gateway.config import GatewayConfig
    from gateway.services.chat_gateway import ChatGateway


def get_chat_gateway(request: Request) -> ChatGateway:
    return request.app.state.gateway


def get_gateway_config(request: Request) -> GatewayConfig:
    return request.app.state.config
