"""
FastAPI application for the inference gateway.

Usage:
    uvicorn gateway.api.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from gateway.api.auth import JWTIdentityVerifier
from gateway.api.context import RequestContextFilter
from gateway.api.error_handlers import (
    app_error_handler,
    global_exception_handler,
    validation_exception_handler,
)
from gateway.api.exceptions import AppError
from gateway.api.middleware import request_context_middleware
from gateway.api.routers import chat, health
from gateway.config import load_config
from gateway.core.logging_utils import get_logger, setup_json_logging
from gateway.services.chat_gateway import ChatGateway

if TYPE_CHECKING:
    from gateway.api.auth import IdentityVerifier
    from gateway.config import GatewayConfig

logger = get_logger(__name__)


def create_app(
    config: GatewayConfig | None = None,
    *,
    gateway: ChatGateway | None = None,
    identity_verifier: IdentityVerifier | None = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Validated configuration; loaded from the environment when omitted.
        gateway: Pre-built chat gateway, mainly for tests with stubbed upstreams.
        identity_verifier: Replaces the default JWT verifier.
        configure_logging: Install the loguru JSON sinks on startup.

    Raises:
        RuntimeError: If configuration validation fails.
    """
    config = config or load_config()
    chat_gateway = gateway or ChatGateway.from_config(config)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if configure_logging:
            setup_json_logging(
                config.runtime.log_level,
                config.runtime.log_file,
                record_filters=[RequestContextFilter()],
            )
        await chat_gateway.start()
        logger.info(
            "gateway_started",
            extra={"providers": chat_gateway.router.enabled_providers()},
        )
        try:
            yield
        finally:
            await chat_gateway.aclose()
            logger.info("gateway_stopped")

    app = FastAPI(
        title="Inference Gateway",
        description="Streams chat completions from Anthropic, OpenAI and Gemini",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.gateway = chat_gateway
    app.state.identity_verifier = identity_verifier or JWTIdentityVerifier(config.auth)
    app.state.log_level = config.runtime.log_level

    allowed_origins = list(config.runtime.allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Debug-Token",
            "traceparent",
        ],
        expose_headers=["X-Request-Id", "X-Trace-Id", "Retry-After"],
        max_age=3600,
    )
    app.middleware("http")(request_context_middleware)

    app.include_router(chat.router, prefix="/v1", tags=["Chat"])
    app.include_router(health.router, tags=["System"])

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    return app


def __getattr__(name: str) -> FastAPI:
    # Built on first access so importing the package never requires secrets
    if name == "app":
        application = create_app()
        globals()["app"] = application
        return application
    raise AttributeError(name)


if __name__ == "__main__":
    import uvicorn

    # Development server - bind to all interfaces for Docker/container access
    uvicorn.run(
        "gateway.api.main:app",
        # nosec B104 - intentional for development/Docker environments
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
