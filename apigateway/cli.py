from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib import error, request
from urllib.parse import urlsplit

import uvicorn

from apigateway.backends import BACKENDS
from apigateway.config import Settings, get_settings
from apigateway.logger import configure_logging
from apigateway.restapi.app import create_app as create_rest_app


def _api_request(
    *,
    base_url: str,
    path: str,
    accept_statuses: Iterable[int] = (),
) -> Tuple[int, Any]:
    url = base_url.rstrip("/") + path
    req = request.Request(url=url, method="GET", headers={"Accept": "application/json"})
    try:
        with request.urlopen(req, timeout=15) as response:
            body = response.read().decode("utf-8")
            return response.status, json.loads(body) if body else {}
    except error.HTTPError as exc:
        payload = exc.read().decode("utf-8")
        if exc.code in set(accept_statuses):
            return exc.code, json.loads(payload) if payload else {}
        detail = payload
        try:
            parsed = json.loads(payload)
            if isinstance(parsed, dict):
                detail = str(parsed.get("message") or parsed.get("detail") or payload)
        except json.JSONDecodeError:
            pass
        raise RuntimeError(f"HTTP {exc.code}: {detail}") from exc


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _default_gateway_url(settings: Settings) -> str:
    host = "127.0.0.1" if settings.server_host in {"0.0.0.0", "::"} else settings.server_host
    return f"http://{host}:{settings.server_port}"


def backend_port(settings: Settings, name: str) -> int:
    url = {
        "users": settings.user_service_url,
        "products": settings.product_service_url,
        "orders": settings.order_service_url,
    }[name]
    parts = urlsplit(url)
    if parts.port:
        return parts.port
    return 443 if parts.scheme == "https" else 80


def cmd_serve(args: argparse.Namespace) -> int:
    settings = get_settings()
    uvicorn.run(
        "apigateway.main:app",
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        reload=args.reload,
        log_config=None,
    )
    return 0


def cmd_backend(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file, settings.log_format)
    port = args.port or backend_port(settings, args.name)
    app = BACKENDS[args.name](port=port)
    uvicorn.run(app, host=args.host, port=port, log_config=None)
    return 0


def cmd_rest_server(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file, settings.log_format)
    app = create_rest_app(settings)
    uvicorn.run(
        app,
        host=args.host or settings.rest_host,
        port=args.port or settings.rest_port,
        log_config=None,
    )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    _, payload = _api_request(base_url=args.gateway_url, path="/services")
    _print_json(payload)
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    status_code, payload = _api_request(
        base_url=args.gateway_url,
        path="/health",
        accept_statuses=(503,),
    )
    _print_json(payload)
    return 0 if status_code == 200 else 1


def build_parser(settings: Optional[Settings] = None) -> argparse.ArgumentParser:
    settings = settings or get_settings()
    parser = argparse.ArgumentParser(prog="apigateway", description="API gateway and demo backends")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the gateway")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=cmd_serve)

    backend = sub.add_parser("backend", help="Run one of the demo backend services")
    backend.add_argument("name", choices=sorted(BACKENDS))
    backend.add_argument("--host", default="0.0.0.0")
    backend.add_argument("--port", type=int, help="Defaults to the port in the service URL setting")
    backend.set_defaults(func=cmd_backend)

    rest = sub.add_parser("rest-server", help="Run the standalone CRUD and auth REST server")
    rest.add_argument("--host")
    rest.add_argument("--port", type=int)
    rest.set_defaults(func=cmd_rest_server)

    status = sub.add_parser("status", help="Show the registered services of a running gateway")
    status.add_argument("--gateway-url", default=_default_gateway_url(settings))
    status.set_defaults(func=cmd_status)

    health = sub.add_parser("health", help="Show gateway health; exit 1 when degraded")
    health.add_argument("--gateway-url", default=_default_gateway_url(settings))
    health.set_defaults(func=cmd_health)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
