"""HTTP front end: VPN management routes and per-endpoint request relay."""

import asyncio
import json
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import EndpointConfig, RelaySettings
from .exceptions import (
    ConnectionInactiveError,
    ForwardExhaustedError,
    InvalidTargetError,
    VPNRelayError,
)
from .forwarder import RequestForwarder, relayable_headers
from .logging import get_logger, setup_logging
from .manager import ConnectionManager
from .middleware import install_protections
from .models import NormalizedResponse, Protocol, RequestDescriptor

logger = get_logger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# The relay re-serializes the body as JSON, so upstream framing headers do
# not apply to it
_ENVELOPE_EXCLUDED_HEADERS = frozenset(
    {"content-length", "content-encoding", "content-type"}
)

GENERIC_ERROR_MESSAGE = "Something went wrong"

BODILESS_STATUSES = frozenset({204, 304})


def _public_message(settings: RelaySettings, error: BaseException) -> str:
    if settings.is_production:
        return GENERIC_ERROR_MESSAGE
    return str(error)


def _forward_error_status(error: Exception) -> int:
    if isinstance(error, InvalidTargetError):
        return 400
    if isinstance(error, ConnectionInactiveError):
        return 503
    if isinstance(error, ForwardExhaustedError):
        return 502
    return 500


def _jsonable_body(body: Any) -> Any:
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return body


async def _read_json(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


async def _autostart(manager: ConnectionManager, endpoint: EndpointConfig, delay: float) -> None:
    await asyncio.sleep(delay)
    if manager.is_active(endpoint.connection_id):
        return
    logger.info(
        "Auto-starting VPN connection for endpoint",
        connection=endpoint.connection_id,
        endpoint=endpoint.path,
    )
    try:
        await manager.start(endpoint.connection_id, endpoint.protocol)
    except VPNRelayError as e:
        logger.error(
            "Failed to auto-start VPN connection",
            connection=endpoint.connection_id,
            error=str(e),
        )


def create_app(
    settings: RelaySettings | None = None,
    *,
    manager: ConnectionManager | None = None,
    forwarder: RequestForwarder | None = None,
    autostart: bool = True,
) -> FastAPI:
    """Build the relay application.

    Args:
        settings: Runtime settings (read from the environment if None)
        manager: Lifecycle manager to use (built from settings if None)
        forwarder: Request forwarder to use (built from settings if None)
        autostart: Start each endpoint's connection shortly after startup

    Returns:
        Configured FastAPI application
    """
    settings = settings or RelaySettings.from_env()
    manager = manager or ConnectionManager(settings)
    forwarder = forwarder or RequestForwarder(
        manager,
        timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        backoff=settings.retry_backoff,
        target_param=settings.target_param,
    )
    started = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        tasks = []
        if autostart:
            tasks = [
                asyncio.create_task(
                    _autostart(manager, endpoint, settings.autostart_delay)
                )
                for endpoint in settings.endpoints
            ]
        logger.info(
            "VPN relay started",
            environment=settings.environment,
            endpoints=[e.path for e in settings.endpoints],
        )
        try:
            yield
        finally:
            logger.info("Shutting down VPN relay")
            for task in tasks:
                task.cancel()
            await manager.shutdown()
            await forwarder.aclose()

    app = FastAPI(title="VPN Relay", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager
    app.state.forwarder = forwarder
    install_protections(app, settings)

    endpoint_paths = [endpoint.path for endpoint in settings.endpoints]

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={
                    "error": "Endpoint not found",
                    "availableEndpoints": endpoint_paths,
                    "documentation": "/api/docs",
                },
            )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": _public_message(settings, exc),
            },
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": time.monotonic() - started,
        }

    @app.get("/vpn/status")
    async def vpn_status() -> dict[str, Any]:
        return {
            "success": True,
            "connections": {
                name: status.to_dict() for name, status in manager.status_all().items()
            },
        }

    @app.post("/vpn/start")
    async def vpn_start(request: Request) -> JSONResponse:
        body = await _read_json(request)
        connection_id = body.get("connectionId")
        protocol = body.get("protocol", Protocol.TCP.value)

        if not connection_id:
            return JSONResponse(
                status_code=400, content={"error": "Connection ID is required"}
            )
        if protocol not in {p.value for p in Protocol}:
            return JSONResponse(
                status_code=400,
                content={"error": "Protocol must be either tcp or udp"},
            )

        try:
            success = await manager.start(connection_id, protocol)
        except VPNRelayError as e:
            logger.error("Error starting VPN", connection=connection_id, error=str(e))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Failed to start VPN connection",
                    "message": _public_message(settings, e),
                    "vpnConnection": connection_id,
                    "vpnStatus": manager.status(connection_id).state.value,
                },
            )

        return JSONResponse(
            content={
                "success": success,
                "connectionId": connection_id,
                "protocol": protocol,
                "status": manager.status(connection_id).state.value,
                "message": "VPN connection started successfully",
            }
        )

    @app.post("/vpn/stop")
    async def vpn_stop(request: Request) -> JSONResponse:
        body = await _read_json(request)
        connection_id = body.get("connectionId")
        if not connection_id:
            return JSONResponse(
                status_code=400, content={"error": "Connection ID is required"}
            )

        await manager.stop(connection_id)
        return JSONResponse(
            content={
                "success": True,
                "connectionId": connection_id,
                "status": manager.status(connection_id).state.value,
                "message": "VPN connection stopped successfully",
            }
        )

    @app.get("/api/docs")
    async def docs(request: Request) -> dict[str, Any]:
        base = str(request.base_url).rstrip("/")
        return {
            "title": "VPN Relay API",
            "version": "0.1.0",
            "endpoints": {
                "health": {"method": "GET", "path": "/health"},
                "vpnStatus": {"method": "GET", "path": "/vpn/status"},
                "startVpn": {
                    "method": "POST",
                    "path": "/vpn/start",
                    "body": {
                        "connectionId": "string (required)",
                        "protocol": "string (tcp|udp, default: tcp)",
                    },
                },
                "stopVpn": {
                    "method": "POST",
                    "path": "/vpn/stop",
                    "body": {"connectionId": "string (required)"},
                },
                "proxyEndpoints": [
                    {
                        "method": "ALL",
                        "path": endpoint.path,
                        "connection": endpoint.connection_id,
                        "usage": f"{endpoint.path}?{settings.target_param}=https://target-website.com",
                    }
                    for endpoint in settings.endpoints
                ],
            },
            "examples": {
                "proxyRequest": f'curl "{base}{endpoint_paths[0]}?{settings.target_param}=https://httpbin.org/ip"'
                if endpoint_paths
                else None,
                "startVpn": f"curl -X POST \"{base}/vpn/start\" -H \"Content-Type: application/json\" "
                "-d '{\"connectionId\": \"custom-connection\", \"protocol\": \"tcp\"}'",
            },
        }

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "message": "VPN relay is running",
            "documentation": "/api/docs",
            "health": "/health",
            "vpnStatus": "/vpn/status",
            "availableEndpoints": endpoint_paths,
        }

    for endpoint in settings.endpoints:
        app.add_api_route(
            endpoint.path,
            _proxy_handler(endpoint.connection_id, settings, manager, forwarder),
            methods=PROXY_METHODS,
            name=f"proxy-{endpoint.connection_id}",
        )

    return app


def _proxy_handler(
    connection_id: str,
    settings: RelaySettings,
    manager: ConnectionManager,
    forwarder: RequestForwarder,
):
    async def proxy(request: Request) -> Response:
        raw_body = await request.body()
        if len(raw_body) > settings.max_body_bytes:
            return JSONResponse(
                status_code=413, content={"error": "Request body too large"}
            )
        json_body: Any = None
        if raw_body and "json" in request.headers.get("content-type", "").lower():
            try:
                json_body = json.loads(raw_body)
            except ValueError:
                json_body = None

        target_url = request.query_params.get(settings.target_param)
        if not target_url and isinstance(json_body, dict):
            target_url = json_body.get(settings.target_param)

        if not target_url:
            return JSONResponse(
                status_code=400,
                content={
                    "error": "Target URL is required",
                    "usage": f"Provide URL in query parameter: ?{settings.target_param}=https://example.com",
                },
            )

        params: dict[str, str | list[str]] = {}
        for key in request.query_params.keys():
            values = request.query_params.getlist(key)
            params[key] = values if len(values) > 1 else values[0]

        descriptor = RequestDescriptor(
            url=target_url,
            method=request.method,
            headers=dict(request.headers.items()),
            params=params,
            content=raw_body if json_body is None and raw_body else None,
            json_body=json_body,
        )

        try:
            response = await forwarder.forward(connection_id, descriptor)
        except VPNRelayError as e:
            logger.error("Proxy request failed", connection=connection_id, error=str(e))
            return JSONResponse(
                status_code=_forward_error_status(e),
                content={
                    "error": "Proxy request failed",
                    "message": _public_message(settings, e),
                    "vpnConnection": connection_id,
                    "vpnStatus": manager.status(connection_id).state.value,
                },
            )

        return _relay_response(response)

    return proxy


def _relay_response(response: NormalizedResponse) -> Response:
    headers = {
        key: value
        for key, value in relayable_headers(response.headers).items()
        if key.lower() not in _ENVELOPE_EXCLUDED_HEADERS
    }
    if response.status_code in BODILESS_STATUSES or response.status_code < 200:
        return Response(status_code=response.status_code, headers=headers)

    payload = response.to_dict()
    payload["data"] = _jsonable_body(payload["data"])
    return JSONResponse(
        status_code=response.status_code,
        headers=headers,
        content={
            "success": True,
            "vpnConnection": response.connection_id,
            "response": payload,
        },
    )


def main() -> None:
    """Run the relay under uvicorn."""
    settings = RelaySettings.from_env()
    setup_logging(level=settings.log_level, json_format=settings.log_json)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
