from __future__ import annotations

from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request

from apigateway.config import Settings, get_settings
from apigateway.logger import get_logger
from apigateway.middleware import build_pipeline, install_pipeline, request_context
from apigateway.restapi import orders, products, users
from apigateway.restapi.common import now_iso
from apigateway.restapi.errors import register_error_handlers, too_many_requests
from apigateway.restapi.store import RestState, build_state
from apigateway.services.rate_limits import FixedWindowRateLimiter

logger = get_logger("restapi")

ENDPOINTS = {
    "health": "/health",
    "users": "/api/users",
    "products": "/api/products",
    "orders": "/api/orders",
}
MIDDLEWARE = {
    "authentication": "JWT-based authentication",
    "rateLimit": "Request rate limiting",
    "logging": "Request/response logging",
    "validation": "Input validation",
    "errorHandling": "Centralized error handling",
}


def create_app(settings: Optional[Settings] = None, *, state: Optional[RestState] = None) -> FastAPI:
    settings = settings or get_settings()
    state = state or build_state(settings)
    started_at = monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "rest.startup",
            "Starting REST server",
            env=settings.app_env,
            port=settings.rest_port,
            users=len(state.users),
            products=len(state.products),
        )
        yield
        logger.info("rest.shutdown", "Shutting down REST server")

    app = FastAPI(
        title=f"{settings.app_name} REST API",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.rest = state
    app.state.rate_limiter = FixedWindowRateLimiter(
        max_requests=settings.rest_rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

    install_pipeline(app, build_pipeline(settings, on_rate_limited=too_many_requests))
    register_error_handlers(app)

    @app.get("/health", tags=["system"])
    async def health(request: Request) -> Dict[str, Any]:
        context = request_context(request)
        return {
            "status": "OK",
            "timestamp": context.timestamp if context else now_iso(),
            "uptime": round(monotonic() - started_at, 3),
            "environment": settings.app_env,
        }

    @app.get("/", tags=["system"])
    async def index() -> Dict[str, Any]:
        return {
            "message": "Welcome to RESTful APIs Learning Project",
            "version": settings.app_version,
            "endpoints": dict(ENDPOINTS),
            "middleware": dict(MIDDLEWARE),
            "features": {
                "apiGateway": f"Available on port {settings.server_port}",
                "microservices": "User, Product, and Order services",
                "middleware": "Custom middleware implementations",
                "restfulDesign": "RESTful API design patterns",
            },
        }

    app.include_router(users.build_router(state))
    app.include_router(products.build_router(state))
    app.include_router(orders.build_router(state))
    return app
