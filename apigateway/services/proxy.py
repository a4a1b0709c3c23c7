from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from time import perf_counter
from typing import Iterable, Optional
from urllib.parse import quote_from_bytes

import httpx

from apigateway.errors import (
    BackendErrorResponse,
    BackendUnreachableError,
    CircuitOpenError,
    InvalidTargetError,
)
from apigateway.logger import get_logger
from apigateway.metrics import record_proxy_outcome
from apigateway.models.context import GatewayRequestContext
from apigateway.models.service import TIMEOUT, HealthStatus, ServiceDescriptor
from apigateway.services.registry import ServiceRegistry

_logger = get_logger("services.proxy")

FORWARDED_BY = "api-gateway"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
_DROP_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}
# Relayed bodies are already decoded by httpx.
_DROP_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}
_GATEWAY_HEADER_PREFIX = "x-gateway-"
# Escape only what cannot appear in a request target; existing %XX escapes pass through.
_PATH_SAFE = "/%:@!$&'()*+,;="
_QUERY_SAFE = _PATH_SAFE + "?"


def _query_bytes(query: str) -> bytes:
    # Starlette decodes the ASGI query string as latin-1.
    try:
        return query.encode("latin-1")
    except UnicodeEncodeError:
        return query.encode("utf-8")


@dataclass(frozen=True)
class ProxiedResponse:
    service_id: str
    status_code: int
    content: bytes
    headers: list[tuple[str, str]] = field(default_factory=list)
    elapsed_ms: float = 0.0


class ServiceProxy:
    def __init__(
        self,
        registry: ServiceRegistry,
        client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 30.0,
        version: str = "1.0.0",
    ) -> None:
        self._registry = registry
        self._client = client
        self._timeout = timeout_seconds
        self._version = version

    def resolve(self, path: str) -> ServiceDescriptor:
        return self._registry.resolve_by_path(path)

    def _outbound_headers(
        self,
        headers: Iterable[tuple[str, str]],
        context: GatewayRequestContext,
    ) -> list[tuple[str, str]]:
        outbound: list[tuple[str, str]] = []
        forwarded_for: Optional[str] = None
        for key, value in headers:
            lowered = key.lower()
            if lowered in _DROP_REQUEST_HEADERS or lowered.startswith(_GATEWAY_HEADER_PREFIX):
                continue
            if lowered == "x-forwarded-by":
                continue
            if lowered == "x-forwarded-for":
                forwarded_for = value
                continue
            outbound.append((key, value))

        if context.client:
            forwarded_for = f"{forwarded_for}, {context.client}" if forwarded_for else context.client
        if forwarded_for:
            outbound.append(("X-Forwarded-For", forwarded_for))
        outbound.extend(
            [
                ("X-Gateway-Request-ID", context.request_id),
                ("X-Gateway-Timestamp", context.timestamp),
                ("X-Gateway-Version", self._version),
                ("X-Forwarded-By", FORWARDED_BY),
            ]
        )
        return outbound

    @staticmethod
    def _relay_headers(
        response: httpx.Response,
        *,
        service_id: str,
        request_id: str,
    ) -> list[tuple[str, str]]:
        relayed = [
            (key, value)
            for key, value in response.headers.multi_items()
            if key.lower() not in _DROP_RESPONSE_HEADERS
        ]
        relayed.append(("X-Gateway-Service", service_id))
        relayed.append(("X-Gateway-Request-ID", request_id))
        return relayed

    @staticmethod
    def target_url(
        descriptor: ServiceDescriptor,
        *,
        path: str,
        raw_path: Optional[bytes] = None,
        query: str = "",
    ) -> httpx.URL:
        """Backend URL carrying the request target exactly as the client sent it.

        ``path`` is the decoded form used for routing; ``raw_path`` is the
        undecoded ASGI ``raw_path`` and wins when present.
        """
        base = httpx.URL(descriptor.url)
        if raw_path is None:
            raw_path = path.encode("utf-8")
        target = quote_from_bytes(raw_path, safe=_PATH_SAFE)
        if query:
            target = f"{target}?{quote_from_bytes(_query_bytes(query), safe=_QUERY_SAFE)}"
        return base.copy_with(raw_path=base.raw_path.rstrip(b"/") + target.encode("ascii"))

    async def forward(
        self,
        context: GatewayRequestContext,
        *,
        method: str,
        path: str,
        raw_path: Optional[bytes] = None,
        query: str = "",
        headers: Iterable[tuple[str, str]] = (),
        body: bytes = b"",
    ) -> ProxiedResponse:
        descriptor = self.resolve(path)
        service_id = descriptor.id

        allowed, retry_after = self._registry.acquire_permit(service_id)
        if not allowed:
            record_proxy_outcome(service=service_id, outcome="circuit_open")
            _logger.warning(
                "proxy.circuit_open",
                "Refused request while circuit breaker is open",
                service=service_id,
                retry_after=retry_after,
            )
            raise CircuitOpenError(service_id, retry_after)

        start = perf_counter()
        try:
            url = self.target_url(descriptor, path=path, raw_path=raw_path, query=query)
            _logger.debug("proxy.forward", "Proxying request", service=service_id, method=method, url=str(url))
            response = await self._client.request(
                method,
                url,
                headers=self._outbound_headers(headers, context),
                content=body,
                timeout=self._timeout,
            )
        except asyncio.CancelledError:
            self._registry.release_trial(service_id)
            record_proxy_outcome(service=service_id, outcome="cancelled")
            _logger.info("proxy.cancelled", "Client went away; backend call cancelled", service=service_id)
            raise
        except httpx.InvalidURL as exc:
            # Never reached the backend, so health and breaker counts stay as they were.
            self._registry.release_trial(service_id)
            record_proxy_outcome(service=service_id, outcome="invalid_target")
            _logger.warning(
                "proxy.invalid_target",
                "Request path cannot be forwarded",
                service=service_id,
                path=path,
                error=str(exc),
            )
            raise InvalidTargetError(service_id, str(exc) or "invalid request target") from exc
        except httpx.TimeoutException as exc:
            self._registry.update_health(service_id, HealthStatus.UNHEALTHY, TIMEOUT)
            record_proxy_outcome(service=service_id, outcome="timeout")
            _logger.warning(
                "proxy.timeout",
                "Backend did not answer in time",
                service=service_id,
                timeout_seconds=self._timeout,
                error_type=type(exc).__name__,
            )
            raise BackendUnreachableError(service_id, "backend timed out", timed_out=True) from exc
        except httpx.HTTPError as exc:
            self._registry.update_health(service_id, HealthStatus.UNHEALTHY, TIMEOUT)
            record_proxy_outcome(service=service_id, outcome="unreachable")
            _logger.warning(
                "proxy.unreachable",
                "Backend could not be reached",
                service=service_id,
                error_type=type(exc).__name__,
                error=str(exc) or type(exc).__name__,
            )
            raise BackendUnreachableError(service_id, str(exc) or type(exc).__name__) from exc

        elapsed_ms = (perf_counter() - start) * 1000
        if response.status_code >= 500:
            self._registry.update_health(service_id, HealthStatus.UNHEALTHY, elapsed_ms)
            record_proxy_outcome(service=service_id, outcome="backend_error")
            _logger.warning(
                "proxy.backend_error",
                "Backend answered with a server error",
                service=service_id,
                status_code=response.status_code,
                duration_ms=round(elapsed_ms, 1),
            )
            raise BackendErrorResponse(service_id, response.status_code)

        self._registry.update_health(service_id, HealthStatus.HEALTHY, elapsed_ms)
        record_proxy_outcome(service=service_id, outcome="relayed")
        return ProxiedResponse(
            service_id=service_id,
            status_code=response.status_code,
            content=response.content,
            headers=self._relay_headers(
                response,
                service_id=service_id,
                request_id=context.request_id,
            ),
            elapsed_ms=elapsed_ms,
        )
