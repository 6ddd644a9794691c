"""
REST API Layer for Receipt Insights.

Provides:
- FastAPI application factory with CORS middleware
- Bearer auth gate for everything except health and docs
- Exception handlers mapping domain errors to HTTP status codes
- Lifespan that creates tables and starts/stops the job queue and scheduler
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from src.api.dependencies import AppServices, build_services
from src.api.routes import router
from src.api.schemas import error_response
from src.config.settings import Settings
from src.infra.database import init_models
from src.lib.errors import (
    AUTH_REQUIRED,
    CONFLICT,
    INTERNAL_ERROR,
    NOT_FOUND,
    UPSTREAM_ERROR,
    VALIDATION_ERROR,
)
from src.lib.exceptions import (
    ConcurrencyConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from src.lib.logging import setup_logging

logger = logging.getLogger(__name__)

_ALLOWED_HEADERS: list[str] = [
    "Authorization",
    "Content-Type",
    "Accept",
    "X-Request-ID",
]

# Paths that do NOT require authentication
_PUBLIC_PATHS: frozenset[str] = frozenset({
    "/health",
    "/api/v1/health",
    "/docs",
    "/redoc",
    "/openapi.json",
})


async def _auth_gate_dispatch(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Reject requests without a bearer header before they reach a route."""
    # CORS preflight (OPTIONS) must pass through
    if request.method == "OPTIONS":
        return await call_next(request)
    path = request.url.path.rstrip("/") or "/"
    if path not in _PUBLIC_PATHS:
        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            return JSONResponse(
                status_code=401,
                content=error_response(AUTH_REQUIRED),
                headers={"WWW-Authenticate": "Bearer"},
            )
    return await call_next(request)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content=error_response(NOT_FOUND, str(exc)))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=error_response(VALIDATION_ERROR, str(exc)))

    @app.exception_handler(ConcurrencyConflictError)
    async def conflict_handler(request: Request, exc: ConcurrencyConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content=error_response(CONFLICT))

    @app.exception_handler(ExternalServiceError)
    async def upstream_handler(request: Request, exc: ExternalServiceError) -> JSONResponse:
        logger.warning("Upstream failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=502, content=error_response(UPSTREAM_ERROR))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=error_response(INTERNAL_ERROR))


def create_app(settings: Settings | None = None, services: AppServices | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Resolved configuration (read from the environment if omitted).
        services: Pre-built services (tests); built from ``settings`` otherwise.

    Returns:
        Configured FastAPI application instance.

    Raises:
        ConfigurationError: If the environment is invalid.
    """
    if services is not None:
        settings = services.settings
    elif settings is None:
        settings = Settings.from_env()
    if services is None:
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(dev_mode=settings.dev_mode)
        if services.engine is not None:
            await init_models(services.engine)
        await services.startup()
        try:
            yield
        finally:
            await services.shutdown()

    app = FastAPI(
        title="Receipt Insights",
        description="Receipt-derived spending insights, budgets and weekly digests",
        version="0.1.0",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan,
    )
    app.state.services = services

    _register_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=_ALLOWED_HEADERS,
    )
    if settings.cors_origins:
        logger.info("CORS enabled for origins: %s", settings.cors_origins)
    else:
        logger.info("CORS: no origins configured (restrictive default)")

    app.add_middleware(BaseHTTPMiddleware, dispatch=_auth_gate_dispatch)

    app.include_router(router)

    @app.get("/health")
    async def root_health_check() -> dict[str, str]:
        """Root health check for infrastructure probes."""
        return {"status": "ok"}

    return app


__all__ = ["create_app", "router"]
