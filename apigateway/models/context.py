from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class GatewayRequestContext:
    request_id: str
    timestamp: str
    version: str
    client: str = ""
    service_id: Optional[str] = None

    def routed_to(self, service_id: str) -> "GatewayRequestContext":
        return replace(self, service_id=service_id)
