from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Request, Response

from apigateway.dependencies import get_request_context, get_runtime
from apigateway.errors import RequestTooLarge
from apigateway.logger import get_logger
from apigateway.models.context import GatewayRequestContext
from apigateway.runtime import GatewayRuntime

router = APIRouter()
_logger = get_logger("api.proxy")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

# Non-standard status logged when the caller hangs up before a reply exists.
CLIENT_CLOSED_REQUEST = 499


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def _discard(task: asyncio.Task) -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


@router.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_request(
    full_path: str,
    request: Request,
    runtime: GatewayRuntime = Depends(get_runtime),
    context: GatewayRequestContext = Depends(get_request_context),
) -> Response:
    # Routing uses the decoded path; the backend receives the raw one.
    path = request.url.path
    # Resolve before touching the body so unroutable paths never read it.
    descriptor = runtime.proxy.resolve(path)
    request.state.gateway = context = context.routed_to(descriptor.id)

    body = await request.body()
    limit = runtime.settings.max_body_bytes
    if len(body) > limit:
        raise RequestTooLarge(len(body), limit)

    forward = asyncio.ensure_future(
        runtime.proxy.forward(
            context,
            method=request.method,
            path=path,
            raw_path=request.scope.get("raw_path"),
            query=request.url.query,
            headers=request.headers.items(),
            body=body,
        )
    )
    disconnect = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        await asyncio.wait({forward, disconnect}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _discard(forward)
        await _discard(disconnect)
        raise

    if not forward.done():
        await _discard(forward)
        _logger.info(
            "proxy.client_disconnected",
            "Client disconnected before the backend answered",
            service=descriptor.id,
            path=path,
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    await _discard(disconnect)
    proxied = forward.result()
    response = Response(content=proxied.content, status_code=proxied.status_code)
    for key, value in proxied.headers:
        response.headers.append(key, value)
    return response
