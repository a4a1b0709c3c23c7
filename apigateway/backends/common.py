"""Shared scaffolding for the demo backend services the gateway fronts."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from time import monotonic
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from apigateway.logger import get_logger
from apigateway.middleware import CallNext, apply_security_headers
from apigateway.utils import isoformat_utc, utcnow

# Longer than the gateway's default proxy timeout.
SIMULATED_TIMEOUT_SECONDS = 35.0

_BASE_ERRORS: Dict[str, Tuple[int, str]] = {
    "server": (500, "Simulated server error"),
}


@dataclass(frozen=True)
class BackendInfo:
    name: str
    slug: str
    version: str
    port: int
    description: str
    endpoints: Tuple[str, ...] = ()
    checks: Mapping[str, str] = field(default_factory=dict)


def now_iso() -> str:
    return isoformat_utc(utcnow()) or ""


def service_context(request: Request) -> Dict[str, Any]:
    return dict(getattr(request.state, "service", {}))


def gateway_echo(request: Request) -> Dict[str, Optional[str]]:
    return {
        "requestId": request.headers.get("x-gateway-request-id"),
        "forwardedBy": request.headers.get("x-forwarded-by"),
    }


def ok(request: Request, data: Any, *, status_code: int = 200, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"success": True}
    if "message" in extra:
        body["message"] = extra.pop("message")
    body["data"] = data
    body.update(extra)
    body["service"] = service_context(request)
    body["timestamp"] = now_iso()
    return JSONResponse(status_code=status_code, content=body)


def fail(request: Request, status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "service": service_context(request),
            "timestamp": now_iso(),
        },
    )


async def simulated_error(
    request: Request,
    error_type: str,
    *,
    extra_errors: Optional[Mapping[str, Tuple[int, str]]] = None,
    timeout_seconds: float = SIMULATED_TIMEOUT_SECONDS,
) -> JSONResponse:
    if error_type == "timeout":
        await asyncio.sleep(timeout_seconds)
        return JSONResponse(status_code=200, content={"message": "This should timeout"})
    errors = dict(_BASE_ERRORS)
    errors.update(extra_errors or {})
    status_code, message = errors.get(error_type, (400, "Invalid error type"))
    return fail(request, status_code, message)


def create_backend_app(info: BackendInfo, routers: Iterable[APIRouter]) -> FastAPI:
    logger = get_logger(f"backend.{info.slug}")
    started_at = monotonic()
    app = FastAPI(title=info.name, version=info.version, description=info.description)
    app.state.backend = info

    async def tag_service(request: Request, call_next: CallNext):
        request.state.service = {
            "name": info.name,
            "version": info.version,
            "port": info.port,
            "timestamp": now_iso(),
        }
        logger.info(
            "backend.request",
            "Handling request",
            method=request.method,
            path=request.url.path,
            gateway=request.headers.get("x-forwarded-by") or "direct",
        )
        return await call_next(request)

    app.add_middleware(BaseHTTPMiddleware, dispatch=tag_service)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(BaseHTTPMiddleware, dispatch=apply_security_headers)

    @app.get("/health", tags=["system"])
    async def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "service": info.name,
            "version": info.version,
            "port": info.port,
            "uptime": round(monotonic() - started_at, 3),
            "timestamp": now_iso(),
            "checks": dict(info.checks),
        }

    @app.get("/", tags=["system"])
    async def service_info(request: Request) -> Dict[str, Any]:
        return {
            "service": info.name,
            "version": info.version,
            "description": info.description,
            "endpoints": list(info.endpoints),
            "gateway": {
                "requestId": request.headers.get("x-gateway-request-id"),
                "timestamp": request.headers.get("x-gateway-timestamp"),
                "version": request.headers.get("x-gateway-version"),
            },
            "timestamp": now_iso(),
        }

    for router in routers:
        app.include_router(router)
    return app
