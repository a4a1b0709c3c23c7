"""Error envelope shared by every REST route.

Failures render as ``{"success": false, "error": {...}, "suggestions": [...]}``
with a stable ``code`` per status family.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apigateway.logger import get_logger
from apigateway.middleware import request_context
from apigateway.responses import rate_limit_headers
from apigateway.services.rate_limits import RateLimitDecision
from apigateway.utils import isoformat_utc, utcnow

_logger = get_logger("restapi.errors")

AVAILABLE_ENDPOINTS = [
    "GET /",
    "GET /health",
    "GET /api/users",
    "POST /api/users",
    "GET /api/products",
    "POST /api/products",
    "GET /api/orders",
    "POST /api/orders",
]

SUGGESTIONS: Dict[int, List[str]] = {
    400: [
        "Check required fields",
        "Verify data types",
        "Review field constraints",
        "Check API documentation for field requirements",
    ],
    401: [
        "Ensure you are logged in",
        "Check if your token is valid and not expired",
        "Include Authorization header with Bearer token",
    ],
    404: [
        "Check the URL spelling",
        "Verify the resource exists",
        "Check API documentation for correct endpoints",
    ],
}


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailed(ApiError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationFailed(ApiError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"


class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource") -> None:
        super().__init__(f"{resource} not found")


class Conflict(ApiError):
    status_code = 409
    code = "CONFLICT_ERROR"


class TooManyAttempts(ApiError):
    status_code = 429
    code = "RATE_LIMIT_ERROR"

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Optional[List[Dict[str, Any]]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    context = request_context(request)
    error: Dict[str, Any] = {
        "message": message,
        "code": code,
        "timestamp": context.timestamp if context else isoformat_utc(utcnow()),
        "path": request.url.path,
        "method": request.method,
        "requestId": context.request_id if context else "N/A",
    }
    if details is not None:
        error["details"] = details
    body: Dict[str, Any] = {"success": False, "error": error}
    if status_code in SUGGESTIONS:
        body["suggestions"] = list(SUGGESTIONS[status_code])
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


def too_many_requests(decision: RateLimitDecision) -> JSONResponse:
    headers = rate_limit_headers(decision)
    headers["Retry-After"] = str(decision.retry_after)
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": "Too many requests from this IP, please try again later.",
            "retryAfter": decision.retry_after,
            "limit": decision.limit,
            "remaining": decision.remaining,
        },
        headers=headers,
    )


def validation_details(exc: RequestValidationError) -> List[Dict[str, Any]]:
    details = []
    for item in exc.errors():
        # Drop the "body"/"query"/"path" location root.
        loc = [str(part) for part in item.get("loc", ())[1:]]
        details.append(
            {
                "field": ".".join(loc),
                "message": item.get("msg", "Invalid value"),
                "value": item.get("input"),
            }
        )
    return details


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        _logger.warning(
            "rest.error",
            exc.message,
            method=request.method,
            path=request.url.path,
            status_code=exc.status_code,
            code=exc.code,
        )
        headers = None
        if isinstance(exc, TooManyAttempts):
            headers = {"Retry-After": str(exc.retry_after)}
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = validation_details(exc)
        _logger.info(
            "rest.validation",
            "Validation failed",
            method=request.method,
            path=request.url.path,
            fields=[item["field"] for item in details],
        )
        return error_response(
            request,
            status_code=400,
            code=ValidationFailed.code,
            message="Validation failed",
            details=details,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={
                    "error": "Route not found",
                    "message": f"Cannot {request.method} {request.url.path}",
                    "availableEndpoints": list(AVAILABLE_ENDPOINTS),
                },
            )
        return error_response(
            request,
            status_code=exc.status_code,
            code="HTTP_ERROR",
            message=str(exc.detail),
            headers=getattr(exc, "headers", None),
        )
