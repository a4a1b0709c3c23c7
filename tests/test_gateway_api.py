from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from apigateway.main import create_app
from apigateway.models.context import GatewayRequestContext
from apigateway.models.service import TIMEOUT, BreakerState, HealthStatus
from apigateway.responses import route_not_found, service_unavailable
from apigateway.services.breaker import CircuitBreaker
from apigateway.services.registry import build_registry

from tests.conftest import (
    ORDERS_HOST,
    PRODUCTS_HOST,
    USERS_HOST,
    FakeBackends,
    make_descriptor,
    make_settings,
)


def test_health_is_healthy_after_startup_probe(client_factory) -> None:
    with client_factory() as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["totalServices"] == 3
    assert body["healthyServices"] == 3
    assert body["gateway"]["version"] == "1.0.0"
    users = body["services"]["user-service"]
    assert users["name"] == "User Service"
    assert users["status"] == "healthy"
    assert users["lastHealthCheck"].endswith("Z")
    assert users["responseTime"].endswith("ms")


def test_one_unhealthy_service_degrades_health(client_factory, backends: FakeBackends) -> None:
    backends.health_status[ORDERS_HOST] = 500
    with client_factory() as client:
        response = client.get("/health")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "degraded"
    assert body["healthyServices"] == 2
    assert body["services"]["order-service"]["status"] == "unhealthy"
    assert body["services"]["user-service"]["status"] == "healthy"


def test_timed_out_probe_reports_timeout_sentinel(client_factory, backends: FakeBackends) -> None:
    backends.failures[PRODUCTS_HOST] = "timeout"
    with client_factory() as client:
        body = client.get("/health").json()

    assert body["services"]["product-service"]["status"] == "unhealthy"
    assert body["services"]["product-service"]["responseTime"] == TIMEOUT


def test_proxy_timeout_overrides_healthy_probe(client_factory, backends: FakeBackends) -> None:
    with client_factory() as client:
        assert client.get("/health").json()["services"]["user-service"]["status"] == "healthy"

        backends.failures[USERS_HOST] = "timeout"
        proxied = client.get("/api/users")
        services = client.get("/services").json()

    assert proxied.status_code == 503
    assert services["data"]["user-service"]["status"] == "unhealthy"
    assert services["data"]["user-service"]["responseTime"] == TIMEOUT


def test_unroutable_path_returns_404_without_mutation(client_factory) -> None:
    with client_factory() as client:
        before = client.get("/services").json()["data"]
        response = client.get("/api/nonexistent/x")
        after = client.get("/services").json()["data"]

    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Route not found"
    assert body["message"] == "Gateway cannot route GET /api/nonexistent/x"
    assert sorted(body["availableServices"]) == ["order-service", "product-service", "user-service"]
    assert body["suggestions"]
    assert body["gateway"]["requestId"] == response.headers["X-Request-ID"]
    assert body["gateway"]["timestamp"].endswith("Z")
    assert before == after


def test_backend_500_then_200_flips_status(client_factory, backends: FakeBackends) -> None:
    backends.queue(USERS_HOST, 500, {"error": "internal"})
    backends.queue(USERS_HOST, 200, {"success": True, "data": [{"id": 1}]})

    with client_factory() as client:
        first = client.get("/api/users")
        status_after_first = client.get("/services").json()["data"]["user-service"]["status"]
        second = client.get("/api/users")
        status_after_second = client.get("/services").json()["data"]["user-service"]["status"]

    assert first.status_code == 503
    payload = first.json()
    assert payload["error"] == "Service unavailable"
    assert payload["service"] == "user-service"
    assert payload["message"] == "User Service is currently unavailable"
    assert payload["gateway"]["retryAfter"] == 30
    failed_call = _forwarded(backends, USERS_HOST)[0]
    assert payload["gateway"]["timestamp"] == failed_call.headers["x-gateway-timestamp"]
    assert first.headers["Retry-After"] == "30"
    assert status_after_first == "unhealthy"

    assert second.status_code == 200
    assert second.json() == {"success": True, "data": [{"id": 1}]}
    assert second.headers["X-Gateway-Service"] == "user-service"
    assert second.headers["X-Gateway-Request-ID"] == second.headers["X-Request-ID"]
    assert status_after_second == "healthy"


def test_proxy_relays_method_body_and_query(client_factory, backends: FakeBackends) -> None:
    with client_factory() as client:
        response = client.post(
            "/api/orders?dryRun=1",
            json={"userId": 1},
            headers={"X-Request-ID": "fixed-id"},
        )

    assert response.status_code == 200
    echoed = response.json()
    assert echoed["host"] == ORDERS_HOST
    assert echoed["method"] == "POST"
    assert echoed["path"] == "/api/orders"
    assert echoed["query"] == "dryRun=1"
    assert json.loads(echoed["body"]) == {"userId": 1}
    assert echoed["headers"]["x-gateway-request-id"] == "fixed-id"
    assert echoed["headers"]["x-forwarded-by"] == "api-gateway"
    assert echoed["headers"]["x-gateway-version"] == "1.0.0"
    assert response.headers["X-Gateway-Service"] == "order-service"
    assert response.headers["X-Request-ID"] == "fixed-id"


def test_unreachable_backend_keeps_gateway_serving(client_factory, backends: FakeBackends) -> None:
    for host in (USERS_HOST, PRODUCTS_HOST, ORDERS_HOST):
        backends.failures[host] = "down"

    with client_factory() as client:
        health = client.get("/health")
        services = client.get("/services")
        index = client.get("/")
        proxied = client.get("/api/products/1")

    assert health.status_code == 503
    assert services.status_code == 200
    assert services.json()["summary"] == {"total": 3, "healthy": 0, "unhealthy": 3, "unknown": 0}
    assert index.status_code == 200
    assert proxied.status_code == 503
    assert proxied.json()["service"] == "product-service"


def test_services_and_health_agree(client_factory, backends: FakeBackends) -> None:
    backends.health_status[PRODUCTS_HOST] = 503
    with client_factory() as client:
        services = client.get("/services").json()
        health = client.get("/health").json()

    assert set(services["data"]) == set(health["services"])
    for service_id, entry in services["data"].items():
        assert health["services"][service_id]["status"] == entry["status"]
        assert entry["healthy"] is (entry["status"] == "healthy")
    assert services["success"] is True
    assert services["summary"]["healthy"] == health["healthyServices"]


def test_services_lists_routes_and_circuit(client_factory) -> None:
    with client_factory() as client:
        data = client.get("/services").json()["data"]

    assert data["user-service"]["routes"] == ["/api/users", "/api/auth"]
    assert data["user-service"]["url"] == f"http://{USERS_HOST}"
    assert data["user-service"]["circuit"] == {"state": "closed", "consecutiveFailures": 0}


def test_index_describes_routes(client_factory) -> None:
    with client_factory() as client:
        body = client.get("/").json()

    assert body["message"] == "API Gateway - Microservices Router"
    assert "Service Discovery" in body["features"]
    assert body["endpoints"]["users"] == "/api/users/*"
    assert body["endpoints"]["health"] == "/health"
    assert {item["id"] for item in body["services"]} == {
        "user-service",
        "product-service",
        "order-service",
    }


def test_version_and_metrics(client_factory) -> None:
    with client_factory() as client:
        version = client.get("/version")
        client.get("/api/users")
        metrics = client.get("/metrics")

    assert version.json() == {"app": "API Gateway", "version": "1.0.0", "env": "test"}
    assert metrics.status_code == 200
    assert "apigateway_proxy_requests_total" in metrics.text
    assert "apigateway_service_up" in metrics.text


def test_metrics_can_be_disabled(client_factory) -> None:
    with client_factory(make_settings(metrics_enabled=False)) as client:
        assert client.get("/metrics").status_code == 404


def test_open_circuit_answers_503_without_calling_backend(backends: FakeBackends) -> None:
    settings = make_settings(breaker_enabled=True, breaker_failure_threshold=1)
    registry = build_registry(
        [make_descriptor("user-service", "/api/users", host=USERS_HOST)],
        breaker=CircuitBreaker(enabled=True, failure_threshold=1, cooldown_seconds=120),
    )
    backends.queue(USERS_HOST, 500, {"error": "internal"})
    app = create_app(settings, registry=registry, transport=httpx.MockTransport(backends))

    with TestClient(app) as client:
        first = client.get("/api/users")
        calls_after_first = len(backends.seen(USERS_HOST, "/api/users"))
        second = client.get("/api/users")

    assert first.status_code == 503
    assert second.status_code == 503
    assert int(second.headers["Retry-After"]) > 100
    assert len(backends.seen(USERS_HOST, "/api/users")) == calls_after_first == 1
    assert registry.state("user-service").breaker is BreakerState.OPEN


def test_health_checks_can_be_disabled(client_factory, backends: FakeBackends) -> None:
    with client_factory(make_settings(health_check_enabled=False)) as client:
        body = client.get("/health").json()

    assert backends.requests == []
    assert {entry["status"] for entry in body["services"].values()} == {"unknown"}
    assert body["services"]["user-service"]["lastHealthCheck"] is None
    assert body["services"]["user-service"]["responseTime"] is None


@pytest.mark.parametrize("method", ["GET", "PUT", "PATCH", "DELETE"])
def test_all_methods_are_proxied(client_factory, method: str) -> None:
    with client_factory() as client:
        response = client.request(method, "/api/products/2")

    assert response.status_code == 200
    assert response.json()["method"] == method


def test_registry_state_reflects_proxy_observation(client_factory, backends: FakeBackends) -> None:
    backends.queue(PRODUCTS_HOST, 404, {"success": False})
    with client_factory() as client:
        response = client.get("/api/products/404")
        runtime = client.app.state.runtime
        state = runtime.registry.state("product-service")

    assert response.status_code == 404
    assert state.status is HealthStatus.HEALTHY


def _forwarded(backends: FakeBackends, host: str) -> list[httpx.Request]:
    return [item for item in backends.seen(host) if item.url.path != "/health"]


@pytest.mark.parametrize(
    "target",
    [
        "/api/products/search/a%3Fb",
        "/api/products/search/a%2Fb",
        "/api/products/search/caf%C3%A9%20bar",
        "/api/products/search/x?q=a%26b&tag=1",
    ],
)
def test_proxy_forwards_the_target_as_sent(client_factory, backends: FakeBackends, target: str) -> None:
    with client_factory() as client:
        response = client.get(target)

    assert response.status_code == 200
    (forwarded,) = _forwarded(backends, PRODUCTS_HOST)
    assert forwarded.url.raw_path == target.encode("ascii")


def test_encoded_question_mark_is_not_a_query(client_factory, backends: FakeBackends) -> None:
    with client_factory() as client:
        echoed = client.get("/api/users/a%3Fb").json()

    assert echoed["path"] == "/api/users/a?b"
    assert echoed["query"] == ""


def test_encoded_control_character_is_forwarded(client_factory, backends: FakeBackends) -> None:
    with client_factory() as client:
        response = client.get("/api/users/%00")
        status = client.get("/services").json()["data"]["user-service"]["status"]

    assert response.status_code == 200
    (forwarded,) = _forwarded(backends, USERS_HOST)
    assert forwarded.url.raw_path == b"/api/users/%00"
    assert status == "healthy"


def test_unforwardable_target_answers_400_without_mutation(client_factory, backends: FakeBackends) -> None:
    with client_factory() as client:
        before = client.get("/services").json()["data"]
        backends.failures[USERS_HOST] = "invalid"
        response = client.get("/api/users/x")
        after = client.get("/services").json()["data"]

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Bad request"
    assert body["message"].startswith("Cannot forward GET /api/users/x")
    assert body["gateway"]["requestId"] == response.headers["X-Request-ID"]
    assert before == after


def test_error_payloads_reuse_the_tagging_timestamp() -> None:
    context = GatewayRequestContext(
        request_id="req-b",
        timestamp="2024-01-01T00:00:00.000Z",
        version="1.0.0",
    )
    missing = route_not_found(context, method="GET", path="/api/nowhere", available_services=["user-service"])
    unavailable = service_unavailable(
        context, service_id="user-service", service_name="User Service", retry_after=30
    )

    for response in (missing, unavailable):
        gateway = json.loads(response.body)["gateway"]
        assert gateway["timestamp"] == "2024-01-01T00:00:00.000Z"
        assert gateway["requestId"] == "req-b"


@pytest.mark.asyncio
async def test_client_disconnect_cancels_backend_call(backends: FakeBackends) -> None:
    app = create_app(make_settings(), transport=httpx.MockTransport(backends))
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/api/users",
        "raw_path": b"/api/users",
        "query_string": b"",
        "root_path": "",
        "headers": [(b"host", b"gateway.test")],
        "client": ("127.0.0.1", 50000),
        "server": ("gateway.test", 80),
    }
    inbound = [{"type": "http.request", "body": b"", "more_body": False}]
    sent = []

    async def receive():
        if inbound:
            return inbound.pop(0)
        await asyncio.sleep(0.2)
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    async with app.router.lifespan_context(app):
        runtime = app.state.runtime
        assert runtime.registry.state("user-service").healthy
        backends.delays[USERS_HOST] = 5
        await asyncio.wait_for(app(scope, receive, send), timeout=3)
        state = runtime.registry.state("user-service")

    assert backends.cancelled == [USERS_HOST]
    assert [message["status"] for message in sent if message["type"] == "http.response.start"] == [499]
    assert state.healthy
