from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Dict, Iterable, Optional

from apigateway.config import Settings
from apigateway.errors import (
    DuplicateServiceError,
    NoRouteError,
    RouteConflictError,
    UnknownServiceError,
)
from apigateway.logger import get_logger
from apigateway.metrics import set_service_up
from apigateway.models.service import (
    TIMEOUT,
    HealthStatus,
    Latency,
    ServiceDescriptor,
    ServiceSnapshot,
    ServiceState,
)
from apigateway.services.breaker import CircuitBreaker
from apigateway.utils import normalize_path, path_has_prefix, sanitize_label, utcnow

_logger = get_logger("services.registry")


class _Entry:
    __slots__ = ("descriptor", "state", "lock")

    def __init__(self, descriptor: ServiceDescriptor) -> None:
        self.descriptor = descriptor
        self.state = ServiceState()
        self.lock = Lock()


class ServiceRegistry:
    """Backend descriptors plus their live health state.

    Every state change swaps a frozen ``ServiceState`` under the entry's lock,
    so readers always see one whole observation. Writes are last-write-wins:
    a slow probe completing after a proxy observation replaces it.
    """

    def __init__(self, breaker: Optional[CircuitBreaker] = None) -> None:
        self._breaker = breaker or CircuitBreaker()
        self._entries: Dict[str, _Entry] = {}
        self._prefix_owners: Dict[str, str] = {}
        self._register_lock = Lock()

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._entries

    def register(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        if not descriptor.id or sanitize_label(descriptor.id) != descriptor.id:
            raise ValueError(f"invalid service id {descriptor.id!r}; use lowercase labels")
        routes = tuple(dict.fromkeys(normalize_path(route) for route in descriptor.routes))
        normalized = replace(descriptor, routes=routes)
        with self._register_lock:
            if normalized.id in self._entries:
                raise DuplicateServiceError(normalized.id)
            for prefix in routes:
                owner = self._prefix_owners.get(prefix)
                if owner is not None:
                    raise RouteConflictError(normalized.id, prefix, owner)
            self._entries[normalized.id] = _Entry(normalized)
            for prefix in routes:
                self._prefix_owners[prefix] = normalized.id
        _logger.info(
            "registry.register",
            "Registered service",
            service=normalized.id,
            url=normalized.url,
            routes=",".join(routes),
        )
        return normalized

    def _entry(self, service_id: str) -> _Entry:
        entry = self._entries.get(service_id)
        if entry is None:
            raise UnknownServiceError(service_id)
        return entry

    def get(self, service_id: str) -> ServiceDescriptor:
        return self._entry(service_id).descriptor

    def state(self, service_id: str) -> ServiceState:
        return self._entry(service_id).state

    def ids(self) -> list[str]:
        return list(self._entries)

    def descriptors(self) -> list[ServiceDescriptor]:
        return [entry.descriptor for entry in self._entries.values()]

    def resolve_by_path(self, path: str) -> ServiceDescriptor:
        target = normalize_path(path)
        best_prefix = ""
        best_owner: Optional[str] = None
        for prefix, owner in self._prefix_owners.items():
            if path_has_prefix(target, prefix) and len(prefix) > len(best_prefix):
                best_prefix = prefix
                best_owner = owner
        if best_owner is None:
            raise NoRouteError(path)
        return self._entries[best_owner].descriptor

    def update_health(
        self,
        service_id: str,
        status: HealthStatus,
        latency: Latency = None,
    ) -> ServiceState:
        entry = self._entry(service_id)
        timed_out = latency == TIMEOUT
        latency_ms = None if timed_out or latency is None else float(latency)
        with entry.lock:
            previous = entry.state
            now = self._breaker.now()
            if status is HealthStatus.HEALTHY:
                updated = self._breaker.on_success(previous, now)
            else:
                updated = self._breaker.on_failure(previous, now)
            updated = replace(
                updated,
                status=status,
                last_health_check=utcnow(),
                latency_ms=latency_ms,
                timed_out=timed_out,
            )
            entry.state = updated

        set_service_up(service_id, updated.healthy)
        if previous.status is not updated.status:
            log = _logger.info if updated.healthy else _logger.warning
            log(
                "registry.status_change",
                "Service health changed",
                service=service_id,
                previous=previous.status.value,
                status=updated.status.value,
                response_time=updated.response_time,
            )
        if previous.breaker is not updated.breaker:
            _logger.warning(
                "registry.breaker_change",
                "Circuit breaker changed state",
                service=service_id,
                previous=previous.breaker.value,
                breaker=updated.breaker.value,
                failures=updated.consecutive_failures,
            )
        return updated

    def acquire_permit(self, service_id: str) -> tuple[bool, int]:
        """Ask the breaker whether a request may go to ``service_id``.

        Returns ``(allowed, retry_after_seconds)``.
        """
        entry = self._entry(service_id)
        with entry.lock:
            now = self._breaker.now()
            allowed, updated = self._breaker.admit(entry.state, now)
            entry.state = updated
            retry_after = 0 if allowed else self._breaker.retry_after(updated, now)
        return allowed, retry_after

    def release_trial(self, service_id: str) -> None:
        entry = self._entry(service_id)
        with entry.lock:
            entry.state = self._breaker.release(entry.state)

    def snapshot(self) -> tuple[ServiceSnapshot, ...]:
        # ServiceState is immutable; grabbing the reference is a consistent copy.
        return tuple(
            ServiceSnapshot(descriptor=entry.descriptor, state=entry.state)
            for entry in list(self._entries.values())
        )


def default_descriptors(settings: Settings) -> list[ServiceDescriptor]:
    def _health(url: str, override: str) -> str:
        return override.strip() or f"{url.rstrip('/')}/health"

    return [
        ServiceDescriptor(
            id="user-service",
            name="User Service",
            url=settings.user_service_url.rstrip("/"),
            health_url=_health(settings.user_service_url, settings.user_service_health_url),
            routes=("/api/users", "/api/auth"),
        ),
        ServiceDescriptor(
            id="product-service",
            name="Product Service",
            url=settings.product_service_url.rstrip("/"),
            health_url=_health(settings.product_service_url, settings.product_service_health_url),
            routes=("/api/products",),
        ),
        ServiceDescriptor(
            id="order-service",
            name="Order Service",
            url=settings.order_service_url.rstrip("/"),
            health_url=_health(settings.order_service_url, settings.order_service_health_url),
            routes=("/api/orders",),
        ),
    ]


def build_registry(
    descriptors: Iterable[ServiceDescriptor],
    *,
    breaker: Optional[CircuitBreaker] = None,
) -> ServiceRegistry:
    registry = ServiceRegistry(breaker=breaker)
    for descriptor in descriptors:
        registry.register(descriptor)
    return registry


def build_default_registry(settings: Settings) -> ServiceRegistry:
    breaker = CircuitBreaker(
        enabled=settings.breaker_enabled,
        failure_threshold=settings.breaker_failure_threshold,
        cooldown_seconds=settings.breaker_cooldown_seconds,
    )
    return build_registry(default_descriptors(settings), breaker=breaker)
