from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, Response

from apigateway.config import Settings
from apigateway.dependencies import get_app_settings, get_runtime
from apigateway.logger import get_logger
from apigateway.metrics import metrics_content_type, render_metrics
from apigateway.models.service import HealthStatus, ServiceSnapshot
from apigateway.runtime import GatewayRuntime
from apigateway.schemas.gateway import (
    CircuitOut,
    GatewayIndexOut,
    GatewayInfoOut,
    HealthOut,
    ServiceHealthOut,
    ServiceRouteOut,
    ServicesOut,
    ServicesSummaryOut,
    ServiceStatusOut,
    VersionOut,
)
from apigateway.utils import isoformat_utc, utcnow

router = APIRouter()
_logger = get_logger("api.system")

GATEWAY_FEATURES = [
    "Service Discovery",
    "Health Monitoring",
    "Request Routing",
    "Rate Limiting",
    "Circuit Breaker",
    "Request/Response Transformation",
]


def _now() -> str:
    return isoformat_utc(utcnow()) or ""


def _count(snapshots: tuple[ServiceSnapshot, ...], status: HealthStatus) -> int:
    return sum(1 for item in snapshots if item.status is status)


@router.get("/", tags=["system"], response_model=GatewayIndexOut, response_model_by_alias=True)
async def gateway_index(runtime: GatewayRuntime = Depends(get_runtime)) -> GatewayIndexOut:
    settings = runtime.settings
    snapshots = runtime.registry.snapshot()
    endpoints = {"health": "/health", "services": "/services", "metrics": "/metrics"}
    for item in snapshots:
        for route in item.descriptor.routes:
            endpoints[route.rsplit("/", 1)[-1]] = f"{route}/*"
    return GatewayIndexOut(
        message=f"{settings.app_name} - Microservices Router",
        version=settings.app_version,
        features=GATEWAY_FEATURES,
        services=[
            ServiceRouteOut(
                id=item.id,
                name=item.descriptor.name,
                routes=list(item.descriptor.routes),
                status=item.status.value,
            )
            for item in snapshots
        ],
        endpoints=endpoints,
        timestamp=_now(),
    )


@router.get("/health", tags=["system"], response_model=HealthOut, response_model_by_alias=True)
async def gateway_health(runtime: GatewayRuntime = Depends(get_runtime)) -> JSONResponse:
    snapshots = runtime.registry.snapshot()
    healthy = _count(snapshots, HealthStatus.HEALTHY)
    overall = "healthy" if healthy == len(snapshots) else "degraded"
    payload = HealthOut(
        status=overall,
        gateway=GatewayInfoOut(
            version=runtime.settings.app_version,
            uptime=runtime.uptime_seconds(),
            timestamp=_now(),
        ),
        services={
            item.id: ServiceHealthOut(
                name=item.descriptor.name,
                status=item.status.value,
                last_health_check=isoformat_utc(item.state.last_health_check),
                response_time=item.state.response_time,
            )
            for item in snapshots
        },
        total_services=len(snapshots),
        healthy_services=healthy,
    )
    _logger.debug("health.check", "Gateway health", status=overall, healthy=healthy)
    return JSONResponse(status_code=200 if overall == "healthy" else 503, content=payload.wire())


@router.get("/services", tags=["system"], response_model=ServicesOut, response_model_by_alias=True)
async def gateway_services(runtime: GatewayRuntime = Depends(get_runtime)) -> JSONResponse:
    snapshots = runtime.registry.snapshot()
    payload = ServicesOut(
        data={
            item.id: ServiceStatusOut(
                name=item.descriptor.name,
                url=item.descriptor.url,
                status=item.status.value,
                routes=list(item.descriptor.routes),
                last_health_check=isoformat_utc(item.state.last_health_check),
                response_time=item.state.response_time,
                healthy=item.state.healthy,
                circuit=CircuitOut(
                    state=item.state.breaker.value,
                    consecutive_failures=item.state.consecutive_failures,
                ),
            )
            for item in snapshots
        },
        summary=ServicesSummaryOut(
            total=len(snapshots),
            healthy=_count(snapshots, HealthStatus.HEALTHY),
            unhealthy=_count(snapshots, HealthStatus.UNHEALTHY),
            unknown=_count(snapshots, HealthStatus.UNKNOWN),
        ),
        timestamp=_now(),
    )
    return JSONResponse(status_code=200, content=payload.wire())


@router.get("/version", tags=["system"], response_model=VersionOut)
async def version(settings: Settings = Depends(get_app_settings)) -> VersionOut:
    return VersionOut(app=settings.app_name, version=settings.app_version, env=settings.app_env)


@router.get("/metrics", include_in_schema=False)
async def metrics(settings: Settings = Depends(get_app_settings)) -> Response:
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics are disabled.")
    return Response(content=render_metrics(), media_type=metrics_content_type())
