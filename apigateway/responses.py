from __future__ import annotations

from typing import Optional, Sequence

from fastapi.responses import JSONResponse

from apigateway.models.context import GatewayRequestContext
from apigateway.schemas.gateway import (
    BadRequestOut,
    GatewayErrorMeta,
    PayloadTooLargeOut,
    RateLimitedOut,
    RouteNotFoundOut,
    ServiceUnavailableOut,
)
from apigateway.services.rate_limits import RateLimitDecision
from apigateway.utils import isoformat_utc, utcnow

RATE_LIMIT_GATEWAY_TAG = "api-gateway-v1"

ROUTE_SUGGESTIONS = [
    "Check if the target service is running",
    "Verify the route path is correct",
    "Check service registration in gateway",
]
UNAVAILABLE_SUGGESTIONS = [
    "Try again in a few moments",
    "Check service status at /services",
    "Contact support if problem persists",
]


def _error_meta(
    context: Optional[GatewayRequestContext],
    *,
    retry_after: Optional[int] = None,
) -> GatewayErrorMeta:
    # Requests rejected before tagging have no context to borrow a timestamp from.
    if context is None:
        return GatewayErrorMeta(timestamp=isoformat_utc(utcnow()) or "", retry_after=retry_after)
    return GatewayErrorMeta(
        request_id=context.request_id,
        timestamp=context.timestamp,
        retry_after=retry_after,
    )


def route_not_found(
    context: Optional[GatewayRequestContext],
    *,
    method: str,
    path: str,
    available_services: Sequence[str],
) -> JSONResponse:
    payload = RouteNotFoundOut(
        message=f"Gateway cannot route {method} {path}",
        available_services=list(available_services),
        suggestions=list(ROUTE_SUGGESTIONS),
        gateway=_error_meta(context),
    )
    return JSONResponse(status_code=404, content=payload.wire(exclude_none=True))


def service_unavailable(
    context: Optional[GatewayRequestContext],
    *,
    service_id: str,
    service_name: str,
    retry_after: int,
) -> JSONResponse:
    payload = ServiceUnavailableOut(
        message=f"{service_name} is currently unavailable",
        service=service_id,
        gateway=_error_meta(context, retry_after=retry_after),
        suggestions=list(UNAVAILABLE_SUGGESTIONS),
    )
    return JSONResponse(
        status_code=503,
        content=payload.wire(exclude_none=True),
        headers={"Retry-After": str(retry_after), "X-Gateway-Service": service_id},
    )


def bad_request(context: Optional[GatewayRequestContext], *, message: str) -> JSONResponse:
    payload = BadRequestOut(message=message, gateway=_error_meta(context))
    return JSONResponse(status_code=400, content=payload.wire(exclude_none=True))


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": str(decision.remaining),
        "RateLimit-Reset": str(decision.reset_after),
    }


def rate_limited(decision: RateLimitDecision) -> JSONResponse:
    payload = RateLimitedOut(
        message="Too many requests through API Gateway. Please try again later.",
        gateway=RATE_LIMIT_GATEWAY_TAG,
        retry_after=decision.retry_after,
    )
    headers = rate_limit_headers(decision)
    headers["Retry-After"] = str(decision.retry_after)
    return JSONResponse(status_code=429, content=payload.wire(), headers=headers)


def payload_too_large(*, size: int, limit: int) -> JSONResponse:
    payload = PayloadTooLargeOut(
        message=f"Request body of {size} bytes exceeds the {limit} byte limit",
        limit=limit,
    )
    return JSONResponse(status_code=413, content=payload.wire())
