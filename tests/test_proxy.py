from __future__ import annotations

import asyncio
from dataclasses import replace

import httpx
import pytest

from apigateway.errors import (
    BackendErrorResponse,
    BackendUnreachableError,
    CircuitOpenError,
    InvalidTargetError,
    NoRouteError,
)
from apigateway.models.context import GatewayRequestContext
from apigateway.models.service import TIMEOUT, HealthStatus
from apigateway.services.breaker import CircuitBreaker
from apigateway.services.proxy import FORWARDED_BY, ServiceProxy
from apigateway.services.registry import build_registry

from tests.conftest import FakeBackends, make_descriptor


def _context(**overrides) -> GatewayRequestContext:
    values = {
        "request_id": "req-1",
        "timestamp": "2024-01-01T00:00:00Z",
        "version": "1.0.0",
        "client": "10.0.0.9",
    }
    values.update(overrides)
    return GatewayRequestContext(**values)


def _setup(backends: FakeBackends, breaker: CircuitBreaker = None):
    registry = build_registry(
        [
            make_descriptor("user-service", "/api/users", host="users.test"),
            make_descriptor("product-service", "/api/products", host="products.test"),
        ],
        breaker=breaker,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(backends))
    return registry, client, ServiceProxy(registry, client, timeout_seconds=1, version="9.9.9")


@pytest.mark.asyncio
async def test_forward_preserves_request_and_injects_gateway_headers(backends: FakeBackends) -> None:
    registry, client, proxy = _setup(backends)
    try:
        result = await proxy.forward(
            _context(),
            method="POST",
            path="/api/users/7",
            query="expand=profile",
            headers=[
                ("Content-Type", "application/json"),
                ("Host", "gateway.local"),
                ("X-Gateway-Request-ID", "spoofed"),
                ("X-Forwarded-For", "203.0.113.5"),
                ("Connection", "keep-alive"),
            ],
            body=b'{"name": "Ada"}',
        )
    finally:
        await client.aclose()

    (sent,) = backends.seen("users.test", "/api/users/7")
    assert sent.method == "POST"
    assert sent.url.query == b"expand=profile"
    assert sent.content == b'{"name": "Ada"}'
    assert sent.headers["content-type"] == "application/json"
    assert sent.headers.get_list("x-gateway-request-id") == ["req-1"]
    assert sent.headers["x-gateway-timestamp"] == "2024-01-01T00:00:00Z"
    assert sent.headers["x-gateway-version"] == "9.9.9"
    assert sent.headers["x-forwarded-by"] == FORWARDED_BY
    assert sent.headers["x-forwarded-for"] == "203.0.113.5, 10.0.0.9"
    assert sent.headers["host"] == "users.test"

    assert result.service_id == "user-service"
    assert result.status_code == 200
    relayed = dict(result.headers)
    assert relayed["X-Gateway-Service"] == "user-service"
    assert relayed["X-Gateway-Request-ID"] == "req-1"
    assert relayed["x-backend"] == "users.test"
    assert registry.state("user-service").status is HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_client_errors_count_as_reachable(backends: FakeBackends) -> None:
    backends.queue("users.test", 404, {"success": False, "error": "User not found"})
    registry, client, proxy = _setup(backends)
    try:
        result = await proxy.forward(_context(), method="GET", path="/api/users/99")
    finally:
        await client.aclose()

    assert result.status_code == 404
    assert b"User not found" in result.content
    assert registry.state("user-service").healthy


@pytest.mark.asyncio
async def test_server_error_marks_unhealthy_and_raises(backends: FakeBackends) -> None:
    backends.queue("users.test", 500, {"error": "boom"})
    registry, client, proxy = _setup(backends)
    try:
        with pytest.raises(BackendErrorResponse) as excinfo:
            await proxy.forward(_context(), method="GET", path="/api/users")
    finally:
        await client.aclose()

    assert excinfo.value.service_id == "user-service"
    assert excinfo.value.status_code == 500
    state = registry.state("user-service")
    assert state.status is HealthStatus.UNHEALTHY
    assert state.response_time != TIMEOUT


@pytest.mark.asyncio
@pytest.mark.parametrize("failure, timed_out", [("timeout", True), ("down", False)])
async def test_transport_failures_record_timeout_sentinel(
    backends: FakeBackends, failure: str, timed_out: bool
) -> None:
    backends.failures["users.test"] = failure
    registry, client, proxy = _setup(backends)
    registry.update_health("user-service", HealthStatus.HEALTHY, 3.0)
    try:
        with pytest.raises(BackendUnreachableError) as excinfo:
            await proxy.forward(_context(), method="GET", path="/api/users")
    finally:
        await client.aclose()

    assert excinfo.value.timed_out is timed_out
    state = registry.state("user-service")
    assert state.status is HealthStatus.UNHEALTHY
    assert state.response_time == TIMEOUT


@pytest.mark.asyncio
async def test_unroutable_path_raises_without_touching_registry(backends: FakeBackends) -> None:
    registry, client, proxy = _setup(backends)
    before = registry.snapshot()
    try:
        with pytest.raises(NoRouteError):
            await proxy.forward(_context(), method="GET", path="/api/nonexistent/x")
    finally:
        await client.aclose()

    assert registry.snapshot() == before
    assert backends.requests == []


@pytest.mark.asyncio
async def test_open_circuit_short_circuits_backend(backends: FakeBackends) -> None:
    breaker = CircuitBreaker(enabled=True, failure_threshold=1, cooldown_seconds=60)
    registry, client, proxy = _setup(backends, breaker=breaker)
    registry.update_health("user-service", HealthStatus.UNHEALTHY, TIMEOUT)
    try:
        with pytest.raises(CircuitOpenError) as excinfo:
            await proxy.forward(_context(), method="GET", path="/api/users")
    finally:
        await client.aclose()

    assert excinfo.value.retry_after >= 59
    assert backends.requests == []


@pytest.mark.asyncio
async def test_cancelled_forward_cancels_backend_call(backends: FakeBackends) -> None:
    backends.delays["users.test"] = 5
    registry, client, proxy = _setup(backends)
    try:
        task = asyncio.create_task(proxy.forward(_context(), method="GET", path="/api/users"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    finally:
        await client.aclose()

    assert backends.cancelled == ["users.test"]
    assert registry.state("user-service").status is HealthStatus.UNKNOWN


@pytest.mark.asyncio
async def test_concurrent_forwards_update_only_their_own_service(backends: FakeBackends) -> None:
    backends.queue("products.test", 502, {"error": "bad gateway"})
    registry, client, proxy = _setup(backends)

    async def call(path: str):
        try:
            return await proxy.forward(_context(), method="GET", path=path)
        except BackendErrorResponse as exc:
            return exc

    try:
        results = await asyncio.gather(call("/api/users"), call("/api/products"))
    finally:
        await client.aclose()

    assert results[0].status_code == 200
    assert isinstance(results[1], BackendErrorResponse)
    assert registry.state("user-service").status is HealthStatus.HEALTHY
    assert registry.state("product-service").status is HealthStatus.UNHEALTHY


@pytest.mark.parametrize(
    "raw_path, query, expected",
    [
        (b"/api/products/search/a%3Fb", "", b"/api/products/search/a%3Fb"),
        (b"/api/products/search/a%2Fb", "", b"/api/products/search/a%2Fb"),
        (b"/api/products/search/x", "q=a%26b&tag=1", b"/api/products/search/x?q=a%26b&tag=1"),
        (b"/api/products/search/caf\xc3\xa9 bar", "", b"/api/products/search/caf%C3%A9%20bar"),
    ],
)
def test_target_url_keeps_the_path_as_sent(raw_path: bytes, query: str, expected: bytes) -> None:
    descriptor = make_descriptor("product-service", "/api/products", host="products.test")
    url = ServiceProxy.target_url(
        descriptor,
        path=raw_path.decode("utf-8", "replace"),
        raw_path=raw_path,
        query=query,
    )

    assert url.host == "products.test"
    assert url.raw_path == expected


def test_target_url_keeps_backend_base_path() -> None:
    descriptor = replace(
        make_descriptor("user-service", "/api/users", host="users.test"),
        url="http://users.test/v1/",
    )

    url = ServiceProxy.target_url(descriptor, path="/api/users/a b")

    assert url.raw_path == b"/v1/api/users/a%20b"


@pytest.mark.asyncio
async def test_unforwardable_target_leaves_registry_untouched(backends: FakeBackends) -> None:
    backends.failures["users.test"] = "invalid"
    registry, client, proxy = _setup(backends)
    registry.update_health("user-service", HealthStatus.HEALTHY, 3.0)
    before = registry.snapshot()
    try:
        with pytest.raises(InvalidTargetError) as excinfo:
            await proxy.forward(_context(), method="GET", path="/api/users/x")
    finally:
        await client.aclose()

    assert excinfo.value.service_id == "user-service"
    assert registry.snapshot() == before
