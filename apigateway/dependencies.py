from __future__ import annotations

from uuid import uuid4

from fastapi import Request

from apigateway.config import Settings
from apigateway.models.context import GatewayRequestContext
from apigateway.runtime import GatewayRuntime
from apigateway.utils import isoformat_utc, utcnow


def get_runtime(request: Request) -> GatewayRuntime:
    return request.app.state.runtime


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_request_context(request: Request) -> GatewayRequestContext:
    context = getattr(request.state, "gateway", None)
    if context is not None:
        return context
    # Only reachable when the tagging interceptor is not installed.
    settings: Settings = request.app.state.settings
    context = GatewayRequestContext(
        request_id=request.headers.get("x-request-id") or str(uuid4()),
        timestamp=isoformat_utc(utcnow()) or "",
        version=settings.app_version,
        client=request.client.host if request.client else "",
    )
    request.state.gateway = context
    return context
