from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

_REQ_COUNT = Counter(
    "apigateway_http_requests_total",
    "Total HTTP requests handled by the gateway",
    labelnames=("method", "route", "status"),
)
_REQ_LATENCY = Histogram(
    "apigateway_http_request_duration_seconds",
    "Gateway HTTP request latency seconds",
    labelnames=("method", "route"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
_PROXY_OUTCOMES = Counter(
    "apigateway_proxy_requests_total",
    "Proxied requests by backend and outcome",
    labelnames=("service", "outcome"),
)
_PROBES = Counter(
    "apigateway_health_probes_total",
    "Health probes by backend and result",
    labelnames=("service", "result"),
)
_SERVICE_UP = Gauge(
    "apigateway_service_up",
    "1 when the backend's latest observation was healthy",
    labelnames=("service",),
)
_RATE_LIMITED = Counter(
    "apigateway_rate_limited_total",
    "Requests rejected by the gateway rate limiter",
)
_PROBE_LOOPS = Counter(
    "apigateway_probe_loops_total",
    "Health prober loop ticks",
    labelnames=("result",),
)


def route_label(path: str) -> str:
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) >= 2 and segments[0] == "api":
        return f"/api/{segments[1]}"
    if not segments:
        return "/"
    if segments[0] in {"health", "services", "metrics", "version", "docs", "openapi.json"}:
        return f"/{segments[0]}"
    return "other"


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    route = route_label(path)
    _REQ_COUNT.labels(method=method, route=route, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, route=route).observe(duration_seconds)


def record_proxy_outcome(*, service: str, outcome: str) -> None:
    _PROXY_OUTCOMES.labels(service=service, outcome=outcome).inc()


def record_probe(*, service: str, result: str) -> None:
    _PROBES.labels(service=service, result=result).inc()


def set_service_up(service: str, up: bool) -> None:
    _SERVICE_UP.labels(service=service).set(1 if up else 0)


def record_rate_limited() -> None:
    _RATE_LIMITED.inc()


def record_probe_loop(*, ok: bool) -> None:
    _PROBE_LOOPS.labels(result="ok" if ok else "error").inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
