"""Cross-cutting request interceptors.

The front controller installs them as one explicit, ordered pipeline
(outermost first) instead of patching response objects:

1. request tagging: request id, arrival timestamp, access log, HTTP metrics
2. security headers
3. CORS
4. request body size limit
5. per-client rate limiting
"""

from __future__ import annotations

from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from apigateway.config import Settings
from apigateway.errors import RateLimitExceeded
from apigateway.logger import get_logger
from apigateway.metrics import observe_http_request, record_rate_limited
from apigateway.models.context import GatewayRequestContext
from apigateway.responses import bad_request, payload_too_large, rate_limit_headers, rate_limited
from apigateway.services.rate_limits import RateLimitDecision
from apigateway.utils import isoformat_utc, utcnow

_logger = get_logger("api")

CallNext = Callable[[Request], Awaitable[Response]]
Dispatch = Callable[[Request, CallNext], Awaitable[Response]]

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "style-src 'self' 'unsafe-inline'; "
    "script-src 'self'; "
    "img-src 'self' data: https:; "
    "base-uri 'self'; "
    "frame-ancestors 'self'; "
    "object-src 'none'"
)

SECURITY_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

# Swagger UI and ReDoc load their bundles from a CDN.
_CSP_EXEMPT_PREFIXES = ("/docs", "/redoc")

EXPOSED_HEADERS = [
    "X-Request-ID",
    "X-Gateway-Service",
    "X-Gateway-Request-ID",
    "RateLimit-Limit",
    "RateLimit-Remaining",
    "RateLimit-Reset",
    "Retry-After",
]


def _client_address(request: Request) -> str:
    if request.client:
        return request.client.host
    return ""


def request_context(request: Request) -> Optional[GatewayRequestContext]:
    return getattr(request.state, "gateway", None)


async def tag_and_log_request(request: Request, call_next: CallNext) -> Response:
    settings: Settings = request.app.state.settings
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client = _client_address(request)
    request.state.gateway = GatewayRequestContext(
        request_id=request_id,
        timestamp=isoformat_utc(utcnow()) or "",
        version=settings.app_version,
        client=client,
    )

    start = perf_counter()
    with _logger.context(request_id=request_id):
        _logger.info(
            "request.start",
            "Started",
            method=request.method,
            path=request.url.path,
            client=client,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            duration = perf_counter() - start
            observe_http_request(
                method=request.method,
                path=request.url.path,
                status=500,
                duration_seconds=duration,
            )
            _logger.exception(
                "request.error",
                "Failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 1),
                error_type=type(exc).__name__,
            )
            raise

        duration = perf_counter() - start
        observe_http_request(
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_seconds=duration,
        )
        _logger.info(
            "request.complete",
            "Completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 1),
        )

    response.headers["X-Request-ID"] = request_id
    return response


async def apply_security_headers(request: Request, call_next: CallNext) -> Response:
    response = await call_next(request)
    for key, value in SECURITY_HEADERS.items():
        response.headers.setdefault(key, value)
    if not request.url.path.startswith(_CSP_EXEMPT_PREFIXES):
        response.headers.setdefault("Content-Security-Policy", CONTENT_SECURITY_POLICY)
    return response


async def limit_request_size(request: Request, call_next: CallNext) -> Response:
    limit = request.app.state.settings.max_body_bytes
    raw_length = request.headers.get("content-length")
    if raw_length:
        try:
            size = int(raw_length)
        except ValueError:
            size = -1
        if size < 0:
            _logger.warning("request.bad_length", "Rejected invalid Content-Length", value=raw_length)
            return bad_request(
                request_context(request),
                message=f"Invalid Content-Length header: {raw_length}",
            )
        if size > limit:
            _logger.warning(
                "request.too_large",
                "Rejected oversized request body",
                path=request.url.path,
                size=size,
                limit=limit,
            )
            return payload_too_large(size=size, limit=limit)
    return await call_next(request)


def rate_limit_dispatch(reject: Callable[[RateLimitDecision], Response] = rate_limited) -> Dispatch:
    """Rate-limit interceptor backed by ``app.state.rate_limiter``; ``reject`` renders the 429."""

    async def enforce_rate_limit(request: Request, call_next: CallNext) -> Response:
        limiter = request.app.state.rate_limiter
        client = _client_address(request) or "anonymous"
        try:
            decision = limiter.enforce(client)
        except RateLimitExceeded as exc:
            record_rate_limited()
            _logger.warning(
                "request.rate_limited",
                "Rate limit exceeded",
                client=exc.client,
                retry_after=exc.retry_after,
            )
            return reject(exc.decision)

        response = await call_next(request)
        for key, value in rate_limit_headers(decision).items():
            response.headers[key] = value
        return response

    return enforce_rate_limit


@dataclass(frozen=True)
class Interceptor:
    name: str
    dispatch: Optional[Dispatch] = None
    middleware_class: Optional[type] = None
    options: dict[str, Any] = field(default_factory=dict)

    def install(self, app: FastAPI) -> None:
        if self.dispatch is not None:
            app.add_middleware(BaseHTTPMiddleware, dispatch=self.dispatch)
        elif self.middleware_class is not None:
            app.add_middleware(self.middleware_class, **self.options)
        else:
            raise ValueError(f"interceptor {self.name} has nothing to install")


def build_pipeline(
    settings: Settings,
    *,
    on_rate_limited: Callable[[RateLimitDecision], Response] = rate_limited,
) -> list[Interceptor]:
    """Interceptors in request order, outermost first."""
    return [
        Interceptor("request_context", dispatch=tag_and_log_request),
        Interceptor("security_headers", dispatch=apply_security_headers),
        Interceptor(
            "cors",
            middleware_class=CORSMiddleware,
            options={
                "allow_origins": settings.allowed_origin_list,
                "allow_credentials": True,
                "allow_methods": ["*"],
                "allow_headers": ["*"],
                "expose_headers": EXPOSED_HEADERS,
            },
        ),
        Interceptor("body_size_limit", dispatch=limit_request_size),
        Interceptor("rate_limit", dispatch=rate_limit_dispatch(on_rate_limited)),
    ]


def install_pipeline(app: FastAPI, pipeline: list[Interceptor]) -> None:
    # add_middleware wraps everything added before it, so install innermost first.
    for interceptor in reversed(pipeline):
        interceptor.install(app)
    app.state.pipeline = [interceptor.name for interceptor in pipeline]
