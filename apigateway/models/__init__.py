from apigateway.models.context import GatewayRequestContext
from apigateway.models.service import (
    TIMEOUT,
    BreakerState,
    HealthStatus,
    Latency,
    ServiceDescriptor,
    ServiceSnapshot,
    ServiceState,
)

__all__ = [
    "TIMEOUT",
    "BreakerState",
    "GatewayRequestContext",
    "HealthStatus",
    "Latency",
    "ServiceDescriptor",
    "ServiceSnapshot",
    "ServiceState",
]
