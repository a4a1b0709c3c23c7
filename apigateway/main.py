from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apigateway.config import Settings, get_settings
from apigateway.dependencies import get_request_context
from apigateway.errors import (
    BackendErrorResponse,
    BackendUnreachableError,
    CircuitOpenError,
    InvalidTargetError,
    NoRouteError,
    ProxyError,
    RateLimitExceeded,
    RequestTooLarge,
    UnknownServiceError,
)
from apigateway.logger import configure_logging, get_logger
from apigateway.middleware import build_pipeline, install_pipeline
from apigateway.responses import (
    bad_request,
    payload_too_large,
    rate_limited,
    route_not_found,
    service_unavailable,
)
from apigateway.routes import proxy, system
from apigateway.runtime import GatewayRuntime
from apigateway.services.registry import ServiceRegistry

logger = get_logger("api")


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NoRouteError)
    async def handle_no_route(request: Request, exc: NoRouteError) -> JSONResponse:
        runtime: GatewayRuntime = request.app.state.runtime
        logger.info("proxy.no_route", "No service owns path", method=request.method, path=exc.path)
        return route_not_found(
            get_request_context(request),
            method=request.method,
            path=exc.path,
            available_services=runtime.registry.ids(),
        )

    async def handle_unavailable(request: Request, exc: ProxyError) -> JSONResponse:
        runtime: GatewayRuntime = request.app.state.runtime
        retry_after = runtime.settings.retry_after_seconds
        if isinstance(exc, CircuitOpenError) and exc.retry_after:
            retry_after = exc.retry_after
        try:
            service_name = runtime.registry.get(exc.service_id).name
        except UnknownServiceError:
            service_name = exc.service_id
        return service_unavailable(
            get_request_context(request),
            service_id=exc.service_id,
            service_name=service_name,
            retry_after=retry_after,
        )

    for exc_class in (BackendUnreachableError, BackendErrorResponse, CircuitOpenError):
        app.add_exception_handler(exc_class, handle_unavailable)

    @app.exception_handler(InvalidTargetError)
    async def handle_invalid_target(request: Request, exc: InvalidTargetError) -> JSONResponse:
        return bad_request(
            get_request_context(request),
            message=f"Cannot forward {request.method} {request.url.path}: {exc.detail}",
        )

    @app.exception_handler(RequestTooLarge)
    async def handle_too_large(request: Request, exc: RequestTooLarge) -> JSONResponse:
        logger.warning(
            "request.too_large",
            "Rejected oversized request body",
            path=request.url.path,
            size=exc.size,
            limit=exc.limit,
        )
        return payload_too_large(size=exc.size, limit=exc.limit)

    @app.exception_handler(RateLimitExceeded)
    async def handle_rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        return rate_limited(exc.decision)


def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[ServiceRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or get_settings()
    runtime = GatewayRuntime(settings, registry=registry, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("app.startup", "Starting app", env=settings.app_env, version=settings.app_version)
        if not settings.is_production and "*" in settings.allowed_origin_list:
            logger.warning("security.cors", "ALLOWED_ORIGINS accepts any origin; restrict it before production")
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()
            logger.info("app.shutdown", "Shutting down app")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.rate_limiter = runtime.rate_limiter

    install_pipeline(app, build_pipeline(settings))
    _register_exception_handlers(app)

    # The catch-all proxy route must stay last.
    app.include_router(system.router)
    app.include_router(proxy.router)
    return app


settings = get_settings()
configure_logging(settings.log_level, settings.log_file, settings.log_format)
app = create_app(settings)
