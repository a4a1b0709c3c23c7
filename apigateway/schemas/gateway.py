from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self, *, exclude_none: bool = False) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


class ServiceHealthOut(_CamelModel):
    name: str
    status: str
    last_health_check: Optional[str]
    response_time: Optional[str]


class GatewayInfoOut(_CamelModel):
    version: str
    uptime: float
    timestamp: str


class HealthOut(_CamelModel):
    status: str
    gateway: GatewayInfoOut
    services: Dict[str, ServiceHealthOut]
    total_services: int
    healthy_services: int


class CircuitOut(_CamelModel):
    state: str
    consecutive_failures: int


class ServiceStatusOut(_CamelModel):
    name: str
    url: str
    status: str
    routes: List[str]
    last_health_check: Optional[str]
    response_time: Optional[str]
    healthy: bool
    circuit: CircuitOut


class ServicesSummaryOut(_CamelModel):
    total: int
    healthy: int
    unhealthy: int
    unknown: int


class ServicesOut(_CamelModel):
    success: bool = True
    data: Dict[str, ServiceStatusOut]
    summary: ServicesSummaryOut
    timestamp: str


class ServiceRouteOut(_CamelModel):
    id: str
    name: str
    routes: List[str]
    status: str


class GatewayIndexOut(_CamelModel):
    message: str
    version: str
    features: List[str]
    services: List[ServiceRouteOut]
    endpoints: Dict[str, str]
    timestamp: str


class VersionOut(_CamelModel):
    app: str
    version: str
    env: str


class GatewayErrorMeta(_CamelModel):
    request_id: Optional[str] = None
    timestamp: str
    retry_after: Optional[int] = None


class RouteNotFoundOut(_CamelModel):
    error: str = "Route not found"
    message: str
    available_services: List[str]
    suggestions: List[str]
    gateway: GatewayErrorMeta


class ServiceUnavailableOut(_CamelModel):
    error: str = "Service unavailable"
    message: str
    service: str
    gateway: GatewayErrorMeta
    suggestions: List[str]


class RateLimitedOut(_CamelModel):
    error: str = "Gateway rate limit exceeded"
    message: str
    gateway: str
    retry_after: int


class BadRequestOut(_CamelModel):
    error: str = "Bad request"
    message: str
    gateway: GatewayErrorMeta


class PayloadTooLargeOut(_CamelModel):
    error: str = "Payload too large"
    message: str
    limit: int
