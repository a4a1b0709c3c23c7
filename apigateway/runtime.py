from __future__ import annotations

from time import monotonic
from typing import Optional

import httpx

from apigateway.config import Settings
from apigateway.logger import get_logger
from apigateway.services.prober import HealthProber
from apigateway.services.proxy import ServiceProxy
from apigateway.services.rate_limits import FixedWindowRateLimiter
from apigateway.services.registry import ServiceRegistry, build_default_registry

_logger = get_logger("runtime")


class GatewayRuntime:
    """Everything one gateway instance owns: registry, HTTP client, prober, proxy."""

    def __init__(
        self,
        settings: Settings,
        *,
        registry: Optional[ServiceRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self.registry = registry if registry is not None else build_default_registry(settings)
        self.rate_limiter = FixedWindowRateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.client = httpx.AsyncClient(transport=transport, follow_redirects=False)
        self.proxy = ServiceProxy(
            self.registry,
            self.client,
            timeout_seconds=settings.proxy_timeout_seconds,
            version=settings.app_version,
        )
        self.prober = HealthProber(
            self.registry,
            self.client,
            interval_seconds=settings.health_check_interval_seconds,
            timeout_seconds=settings.health_check_timeout_seconds,
        )
        self._started_at = monotonic()

    @property
    def settings(self) -> Settings:
        return self._settings

    def uptime_seconds(self) -> float:
        return round(monotonic() - self._started_at, 3)

    async def start(self) -> None:
        self._started_at = monotonic()
        _logger.info(
            "runtime.start",
            "Starting gateway runtime",
            services=len(self.registry),
            breaker_enabled=self.registry.breaker.enabled,
        )
        if self._settings.health_check_enabled:
            await self.prober.start()
        else:
            _logger.warning("runtime.prober_disabled", "Health monitoring is disabled")

    async def stop(self) -> None:
        await self.prober.stop()
        await self.client.aclose()
        _logger.info("runtime.stop", "Stopped gateway runtime")
