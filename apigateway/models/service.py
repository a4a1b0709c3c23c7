from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

TIMEOUT = "timeout"

Latency = Union[float, str, None]


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class ServiceDescriptor:
    id: str
    name: str
    url: str
    health_url: str
    routes: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ServiceState:
    status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check: Optional[datetime] = None
    latency_ms: Optional[float] = None
    timed_out: bool = False
    consecutive_failures: int = 0
    breaker: BreakerState = BreakerState.CLOSED
    opened_at: Optional[float] = None
    trial_in_flight: bool = False

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    @property
    def response_time(self) -> Optional[str]:
        if self.timed_out:
            return TIMEOUT
        if self.latency_ms is None:
            return None
        return f"{round(self.latency_ms)}ms"


@dataclass(frozen=True)
class ServiceSnapshot:
    descriptor: ServiceDescriptor
    state: ServiceState

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def status(self) -> HealthStatus:
        return self.state.status
