from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import httpx
import pytest

from apigateway.config import Settings
from apigateway.main import create_app
from apigateway.models.service import ServiceDescriptor
from apigateway.restapi.app import create_app as create_rest_app
from apigateway.services.registry import ServiceRegistry

USERS_HOST = "users.test"
PRODUCTS_HOST = "products.test"
ORDERS_HOST = "orders.test"

SERVICE_HOSTS = {
    "user-service": USERS_HOST,
    "product-service": PRODUCTS_HOST,
    "order-service": ORDERS_HOST,
}


class FakeBackends:
    """Stand-in for the three backend services behind an ``httpx.MockTransport``.

    Health endpoints answer 200 unless overridden; other paths echo the request
    back as JSON unless a canned response is queued for the host.
    """

    def __init__(self) -> None:
        self.health_status: Dict[str, int] = defaultdict(lambda: 200)
        self.failures: Dict[str, str] = {}
        self.delays: Dict[str, float] = {}
        self.queued: Dict[str, Deque[Tuple[int, Any]]] = defaultdict(deque)
        self.requests: List[httpx.Request] = []
        self.cancelled: List[str] = []

    def queue(self, host: str, status_code: int, payload: Any) -> None:
        self.queued[host].append((status_code, payload))

    def seen(self, host: str, path: Optional[str] = None) -> List[httpx.Request]:
        return [
            item
            for item in self.requests
            if item.url.host == host and (path is None or item.url.path == path)
        ]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        delay = self.delays.get(host)
        if delay:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(host)
                raise

        failure = self.failures.get(host)
        if failure == "down":
            raise httpx.ConnectError("connection refused", request=request)
        if failure == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if failure == "invalid":
            raise httpx.InvalidURL("Invalid non-printable ASCII character in URL")

        if request.url.path == "/health":
            status_code = self.health_status[host]
            return httpx.Response(status_code, json={"status": "healthy" if status_code < 400 else "down"})

        if self.queued[host]:
            status_code, payload = self.queued[host].popleft()
            return httpx.Response(status_code, json=payload, headers={"X-Backend": host})

        return httpx.Response(
            200,
            json={
                "host": host,
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query.decode("ascii"),
                "headers": {key: value for key, value in request.headers.items()},
                "body": request.content.decode("utf-8"),
            },
            headers={"X-Backend": host},
        )


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "_env_file": None,
        "app_env": "test",
        "user_service_url": f"http://{USERS_HOST}",
        "product_service_url": f"http://{PRODUCTS_HOST}",
        "order_service_url": f"http://{ORDERS_HOST}",
        "health_check_interval_seconds": 3600,
        "health_check_timeout_seconds": 1,
        "proxy_timeout_seconds": 1,
        "retry_after_seconds": 30,
        "password_hash_time_cost": 1,
        "password_hash_memory_kib": 1024,
    }
    values.update(overrides)
    return Settings(**values)


def make_descriptor(service_id: str, *routes: str, host: Optional[str] = None) -> ServiceDescriptor:
    base = f"http://{host or service_id + '.test'}"
    return ServiceDescriptor(
        id=service_id,
        name=service_id.replace("-", " ").title(),
        url=base,
        health_url=f"{base}/health",
        routes=tuple(routes),
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def backends() -> FakeBackends:
    return FakeBackends()


@pytest.fixture
def transport(backends: FakeBackends) -> httpx.MockTransport:
    return httpx.MockTransport(backends)


@pytest.fixture
def client_factory(transport: httpx.MockTransport):
    from fastapi.testclient import TestClient

    def _build(
        settings: Optional[Settings] = None,
        registry: Optional[ServiceRegistry] = None,
    ) -> TestClient:
        app = create_app(settings or make_settings(), registry=registry, transport=transport)
        return TestClient(app)

    return _build


@pytest.fixture
def rest_client_factory():
    from fastapi.testclient import TestClient

    def _build(settings: Optional[Settings] = None) -> TestClient:
        return TestClient(create_rest_app(settings or make_settings()))

    return _build


class ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: List[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def log_records():
    handler = ListHandler()
    logger = logging.getLogger("apigateway")
    previous_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        yield handler.records
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)
