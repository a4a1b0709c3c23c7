from __future__ import annotations

import asyncio
from time import perf_counter
from typing import Optional

import httpx

from apigateway.logger import get_logger
from apigateway.metrics import record_probe, record_probe_loop
from apigateway.models.service import TIMEOUT, HealthStatus, ServiceDescriptor, ServiceState
from apigateway.services.registry import ServiceRegistry

_logger = get_logger("services.prober")


class HealthProber:
    """Out-of-band health checks for every registered backend.

    ``start`` runs one full pass before scheduling the periodic loop, so no
    service stays ``unknown`` longer than one probe timeout after startup.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        client: httpx.AsyncClient,
        *,
        interval_seconds: float = 30.0,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._registry = registry
        self._client = client
        self._interval = interval_seconds
        self._timeout = timeout_seconds
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def probe(self, descriptor: ServiceDescriptor) -> ServiceState:
        start = perf_counter()
        try:
            response = await self._client.get(descriptor.health_url, timeout=self._timeout)
        except httpx.HTTPError as exc:
            record_probe(service=descriptor.id, result="unreachable")
            _logger.warning(
                "probe.failed",
                "Health check failed",
                service=descriptor.id,
                url=descriptor.health_url,
                error_type=type(exc).__name__,
                error=str(exc) or type(exc).__name__,
            )
            return self._registry.update_health(descriptor.id, HealthStatus.UNHEALTHY, TIMEOUT)

        elapsed_ms = (perf_counter() - start) * 1000
        if response.is_success:
            record_probe(service=descriptor.id, result="healthy")
            _logger.debug(
                "probe.healthy",
                "Service is healthy",
                service=descriptor.id,
                duration_ms=round(elapsed_ms, 1),
            )
            return self._registry.update_health(descriptor.id, HealthStatus.HEALTHY, elapsed_ms)

        record_probe(service=descriptor.id, result="unhealthy")
        _logger.warning(
            "probe.unhealthy",
            "Health endpoint returned a non-success status",
            service=descriptor.id,
            status_code=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return self._registry.update_health(descriptor.id, HealthStatus.UNHEALTHY, elapsed_ms)

    async def _probe_isolated(self, descriptor: ServiceDescriptor) -> Optional[ServiceState]:
        try:
            return await self.probe(descriptor)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            _logger.exception(
                "probe.error",
                "Unexpected error while probing service",
                service=descriptor.id,
                error_type=type(exc).__name__,
            )
            return None

    async def run_once(self) -> dict[str, Optional[ServiceState]]:
        descriptors = self._registry.descriptors()
        async with _logger.operation(
            "probe.cycle",
            "Running health checks",
            services=len(descriptors),
        ) as op:
            results = await asyncio.gather(*(self._probe_isolated(item) for item in descriptors))
            outcome = {item.id: state for item, state in zip(descriptors, results)}
            healthy = sum(1 for state in results if state is not None and state.healthy)
            if healthy < len(descriptors):
                op.step_warning(
                    "probe.summary",
                    "Health checks complete with degraded services",
                    healthy=healthy,
                    total=len(descriptors),
                    degraded=sorted(
                        key for key, state in outcome.items() if state is None or not state.healthy
                    ),
                )
            else:
                op.step(
                    "probe.summary",
                    "Health checks complete",
                    healthy=healthy,
                    total=len(descriptors),
                )
            return outcome

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        await self.run_once()
        self._task = asyncio.create_task(self._probe_loop())
        _logger.info(
            "prober.start",
            "Started health monitoring",
            interval_seconds=self._interval,
            timeout_seconds=self._timeout,
        )

    async def stop(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        _logger.info("prober.stop", "Stopped health monitoring")

    async def _probe_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.run_once()
                record_probe_loop(ok=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                record_probe_loop(ok=False)
                _logger.exception(
                    "prober.error",
                    "Health check cycle failed",
                    error_type=type(exc).__name__,
                )
