from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from apigateway.logger import get_logger
from apigateway.restapi.errors import AuthenticationFailed, TooManyAttempts
from apigateway.security import LoginRateLimiter, TokenError, TokenService

_logger = get_logger("restapi.auth")


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    username: str
    email: str


def _tokens(request: Request) -> TokenService:
    return request.app.state.rest.tokens


def _authenticate(request: Request) -> AuthenticatedUser:
    try:
        claims = _tokens(request).decode_header(request.headers.get("authorization"))
    except TokenError as exc:
        _logger.info("auth.rejected", "Rejected bearer token", path=request.url.path, reason=exc.message)
        raise AuthenticationFailed(exc.message) from exc
    return AuthenticatedUser(
        user_id=str(claims.get("userId", "")),
        username=str(claims.get("username", "")),
        email=str(claims.get("email", "")),
    )


async def require_user(request: Request) -> AuthenticatedUser:
    return _authenticate(request)


async def optional_user(request: Request) -> Optional[AuthenticatedUser]:
    """Resolve the caller when a valid token is present; never rejects."""
    if not request.headers.get("authorization"):
        return None
    try:
        return _authenticate(request)
    except AuthenticationFailed:
        return None


def client_key(request: Request) -> str:
    return request.client.host if request.client else "anonymous"


async def guard_auth_attempts(request: Request) -> str:
    limiter: LoginRateLimiter = request.app.state.rest.auth_limiter
    key = client_key(request)
    allowed, retry_after = limiter.check(key)
    if not allowed:
        _logger.warning("auth.locked", "Too many failed authentication attempts", client=key)
        raise TooManyAttempts(
            "Too many failed authentication attempts. Please try again later.",
            retry_after=retry_after,
        )
    return key
