from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from apigateway.services.rate_limits import RateLimitDecision


class RegistryError(RuntimeError):
    def __init__(self, service_id: str, detail: str) -> None:
        super().__init__(f"{service_id}: {detail}" if service_id else detail)
        self.service_id = service_id
        self.detail = detail


class DuplicateServiceError(RegistryError):
    def __init__(self, service_id: str) -> None:
        super().__init__(service_id, "service is already registered")


class UnknownServiceError(RegistryError):
    def __init__(self, service_id: str) -> None:
        super().__init__(service_id, "service is not registered")


class RouteConflictError(RegistryError):
    def __init__(self, service_id: str, prefix: str, owner_id: str) -> None:
        super().__init__(service_id, f"route prefix {prefix} is already owned by {owner_id}")
        self.prefix = prefix
        self.owner_id = owner_id


class NoRouteError(RegistryError):
    def __init__(self, path: str) -> None:
        super().__init__("", f"no registered service owns {path}")
        self.path = path


class ProxyError(RuntimeError):
    def __init__(self, service_id: str, detail: str) -> None:
        super().__init__(f"{service_id}: {detail}")
        self.service_id = service_id
        self.detail = detail


class BackendUnreachableError(ProxyError):
    def __init__(self, service_id: str, detail: str, *, timed_out: bool = False) -> None:
        super().__init__(service_id, detail)
        self.timed_out = timed_out


class BackendErrorResponse(ProxyError):
    def __init__(self, service_id: str, status_code: int) -> None:
        super().__init__(service_id, f"backend answered HTTP {status_code}")
        self.status_code = status_code


class InvalidTargetError(ProxyError):
    """The request path cannot be expressed as a backend URL."""


class CircuitOpenError(ProxyError):
    def __init__(self, service_id: str, retry_after: Optional[int] = None) -> None:
        super().__init__(service_id, "circuit breaker is open")
        self.retry_after = retry_after


class RateLimitExceeded(RuntimeError):
    def __init__(self, client: str, decision: "RateLimitDecision") -> None:
        super().__init__(f"rate limit exceeded for {client}")
        self.client = client
        self.decision = decision

    @property
    def retry_after(self) -> int:
        return self.decision.retry_after


class RequestTooLarge(RuntimeError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"request body of {size} bytes exceeds {limit} bytes")
        self.size = size
        self.limit = limit
