from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from apigateway.models.service import TIMEOUT, HealthStatus
from apigateway.services.prober import HealthProber
from apigateway.services.registry import build_registry

from tests.conftest import FakeBackends, make_descriptor


def _setup(backends: FakeBackends, **kwargs):
    registry = build_registry(
        [
            make_descriptor("user-service", "/api/users", host="users.test"),
            make_descriptor("product-service", "/api/products", host="products.test"),
            make_descriptor("order-service", "/api/orders", host="orders.test"),
        ]
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(backends))
    return registry, client, HealthProber(registry, client, **kwargs)


@pytest.mark.asyncio
async def test_run_once_classifies_each_service_independently(backends: FakeBackends) -> None:
    backends.health_status["products.test"] = 503
    backends.failures["orders.test"] = "down"
    registry, client, prober = _setup(backends)
    try:
        outcome = await prober.run_once()
    finally:
        await client.aclose()

    assert set(outcome) == {"user-service", "product-service", "order-service"}
    users = registry.state("user-service")
    products = registry.state("product-service")
    orders = registry.state("order-service")

    assert users.status is HealthStatus.HEALTHY
    assert users.response_time is not None and users.response_time.endswith("ms")
    assert products.status is HealthStatus.UNHEALTHY
    assert products.response_time != TIMEOUT
    assert orders.status is HealthStatus.UNHEALTHY
    assert orders.response_time == TIMEOUT


@pytest.mark.asyncio
async def test_cycle_summary_warns_when_services_are_degraded(backends: FakeBackends, log_records) -> None:
    _, client, prober = _setup(backends)
    try:
        await prober.run_once()
        backends.failures["orders.test"] = "down"
        await prober.run_once()
    finally:
        await client.aclose()

    summaries = [
        record for record in log_records if getattr(record, "fields", {}).get("step") == "probe.summary"
    ]
    assert [record.levelno for record in summaries] == [logging.INFO, logging.WARNING]
    assert summaries[1].fields["degraded"] == ["order-service"]
    assert summaries[1].fields["healthy"] == 2


@pytest.mark.asyncio
async def test_timeout_overrides_previous_healthy_observation(backends: FakeBackends) -> None:
    registry, client, prober = _setup(backends)
    try:
        await prober.run_once()
        assert registry.state("user-service").healthy

        backends.failures["users.test"] = "timeout"
        await prober.run_once()
    finally:
        await client.aclose()

    state = registry.state("user-service")
    assert state.status is HealthStatus.UNHEALTHY
    assert state.response_time == TIMEOUT


@pytest.mark.asyncio
async def test_slow_probe_does_not_delay_the_others(backends: FakeBackends) -> None:
    backends.delays["users.test"] = 0.3
    registry, client, prober = _setup(backends)
    try:
        task = asyncio.create_task(prober.run_once())
        await asyncio.sleep(0.1)
        assert registry.state("product-service").healthy
        assert registry.state("order-service").healthy
        assert registry.state("user-service").status is HealthStatus.UNKNOWN
        await task
    finally:
        await client.aclose()

    assert registry.state("user-service").healthy


@pytest.mark.asyncio
async def test_unexpected_probe_error_is_contained(backends: FakeBackends, monkeypatch) -> None:
    registry, client, prober = _setup(backends)
    original = prober.probe

    async def flaky(descriptor):
        if descriptor.id == "user-service":
            raise RuntimeError("boom")
        return await original(descriptor)

    monkeypatch.setattr(prober, "probe", flaky)
    try:
        outcome = await prober.run_once()
    finally:
        await client.aclose()

    assert outcome["user-service"] is None
    assert registry.state("product-service").healthy


@pytest.mark.asyncio
async def test_start_probes_immediately_and_stop_ends_loop(backends: FakeBackends) -> None:
    registry, client, prober = _setup(backends, interval_seconds=3600)
    try:
        await prober.start()
        assert prober.running
        assert all(item.state.healthy for item in registry.snapshot())
        assert len(backends.seen("users.test", "/health")) == 1

        await prober.stop()
        assert not prober.running
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_loop_probes_again_after_each_interval(backends: FakeBackends) -> None:
    registry, client, prober = _setup(backends, interval_seconds=0.05)
    try:
        await prober.start()
        await asyncio.sleep(0.2)
        await prober.stop()
    finally:
        await client.aclose()

    assert len(backends.seen("users.test", "/health")) >= 2
