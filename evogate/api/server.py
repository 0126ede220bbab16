"""FastAPI surface for the instance lifecycle gateway.

Evolution-style endpoints:
- GET  /                              - Service banner
- GET  /health                        - Health check
- GET  /manager/fetchInstances        - List instances
- POST /instance/create               - Create an instance
- GET  /instance/qrcode/{name}        - Start pairing and fetch the current QR
- GET  /instance/connectionState/{name}
- POST /message/sendText/{name}       - Send a text message
- DELETE /instance/logout/{name}      - Unlink the device
- DELETE /instance/delete/{name}      - Forget the instance
- POST /instance/simulate/{name}/{event} - Drive the simulated transport
- POST /webhook/{name}                - Webhook receipt
- GET  /metrics                       - Prometheus metrics
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from evogate import __version__
from evogate.api.schemas import (
    ConnectionStateView,
    CreateInstanceRequest,
    InstanceView,
    QrCodeView,
    SendTextRequest,
    SendTextResponse,
    dump,
)
from evogate.core.errors import (
    AlreadyConnectedError,
    AlreadyExistsError,
    ExpiredError,
    GatewayError,
    InvalidArgumentError,
    InvalidStateError,
    NotConnectedError,
    NotFoundError,
    TransportError,
)
from evogate.core.models import InstanceState
from evogate.core.registry import InstanceRegistry
from evogate.qr import QrImageEncoder, QrOptions
from evogate.telemetry import InMemoryTelemetry, PrometheusTelemetry, TelemetryPort, build_telemetry
from evogate.transport import BaseTransport, SimulatedTransport, build_transport

if TYPE_CHECKING:
    from evogate.config.schema import Config


ERROR_STATUS: dict[type[GatewayError], int] = {
    InvalidArgumentError: 400,
    NotFoundError: 404,
    AlreadyExistsError: 409,
    AlreadyConnectedError: 409,
    NotConnectedError: 409,
    InvalidStateError: 409,
    ExpiredError: 410,
    TransportError: 502,
}

SIMULATED_EVENTS = ("scan", "open", "close", "fail")


def status_for(exc: GatewayError) -> int:
    """HTTP status for a gateway error, resolved along the class hierarchy."""
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


@dataclass
class GatewayState:
    """Shared state for the API, kept on ``app.state.gateway``."""

    config: Config
    registry: InstanceRegistry
    transport: BaseTransport
    telemetry: TelemetryPort
    encoder: QrImageEncoder
    start_time: float = 0.0
    sweeper: asyncio.Task[None] | None = field(default=None, repr=False)


def build_registry(config: Config, telemetry: TelemetryPort | None = None) -> InstanceRegistry:
    return InstanceRegistry(
        qr_ttl_seconds=config.instances.qr_ttl_seconds,
        logged_out_policy=config.instances.logged_out_policy,
        telemetry=telemetry,
    )


async def _sweep_loop(registry: InstanceRegistry, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            expired = registry.sweep_expired()
            if expired:
                logger.debug(f"QR sweeper expired {expired} code(s)")
        except Exception as e:
            logger.warning(f"QR sweep failed: {e}")


def create_app(
    config: Config,
    registry: InstanceRegistry | None = None,
    transport: BaseTransport | None = None,
    telemetry: TelemetryPort | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: evogate configuration
        registry: Instance registry; built from ``config`` when omitted
        transport: Session transport; built from ``config.transport.mode`` when omitted
        telemetry: Telemetry backend; built from ``config.telemetry`` when omitted

    Returns:
        FastAPI application instance
    """
    if telemetry is None:
        telemetry = build_telemetry(config.telemetry.backend)
    if registry is None:
        registry = build_registry(config, telemetry)
    if transport is None:
        transport = build_transport(config, registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state: GatewayState = app.state.gateway
        state.start_time = time.monotonic()
        await transport.start()
        interval = config.instances.sweep_interval_seconds
        if interval > 0:
            state.sweeper = asyncio.create_task(_sweep_loop(registry, float(interval)))
        logger.info(
            f"{config.gateway.banner} starting on http://{config.gateway.host}:{config.gateway.port} "
            f"(transport={transport.name})"
        )
        try:
            yield
        finally:
            logger.info(f"{config.gateway.banner} shutting down")
            if state.sweeper:
                state.sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await state.sweeper
                state.sweeper = None
            await transport.stop()

    app = FastAPI(
        title=config.gateway.banner,
        description="WhatsApp instance lifecycle gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.gateway = GatewayState(
        config=config,
        registry=registry,
        transport=transport,
        telemetry=telemetry,
        encoder=QrImageEncoder(
            QrOptions(
                width=config.qr.width,
                margin=config.qr.margin,
                dark=config.qr.dark,
                light=config.qr.light,
            )
        ),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def gateway(request: Request) -> GatewayState:
        return request.app.state.gateway

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.debug(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
        return JSONResponse(status_code=status, content={"error": exc.to_dict()})

    @app.get("/", tags=["health"])
    async def banner() -> dict[str, str]:
        return {"message": config.gateway.banner, "status": "online", "version": __version__}

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/manager/fetchInstances", tags=["instances"])
    async def fetch_instances(request: Request) -> list[dict[str, Any]]:
        return [dump(InstanceView.from_summary(s)) for s in gateway(request).registry.list()]

    @app.post("/instance/create", tags=["instances"], status_code=201)
    async def create_instance(request: Request, body: CreateInstanceRequest | None = None) -> dict[str, Any]:
        instance = gateway(request).registry.create(body.instance_name if body else None)
        return {"instance": dump(InstanceView.from_summary(instance.summary()))}

    @app.get("/instance/qrcode/{name}", tags=["instances"])
    async def get_qrcode(request: Request, name: str, image: bool = True) -> dict[str, Any]:
        """Start pairing when idle, then return the current QR code."""
        state = gateway(request)
        instance = state.registry.get(name)
        if instance.state in (InstanceState.CREATED, InstanceState.DISCONNECTED):
            await state.transport.connect(instance.name)
        qr = state.registry.request_qr(instance.name)
        data_url = state.encoder.encode_data_url(qr.token) if image else None
        return dump(QrCodeView.from_qr(qr, data_url))

    @app.get("/instance/connectionState/{name}", tags=["instances"])
    async def connection_state(request: Request, name: str) -> dict[str, Any]:
        instance = gateway(request).registry.get_status(name)
        return {"instance": dump(ConnectionStateView.from_instance(instance))}

    @app.post("/message/sendText/{name}", tags=["messages"], status_code=201)
    async def send_text(request: Request, name: str, body: SendTextRequest | None = None) -> dict[str, Any]:
        state = gateway(request)
        body = body or SendTextRequest()
        message = state.registry.send_message(name, body.number, body.text)
        await state.transport.send_text(message)
        return dump(SendTextResponse.from_message(message))

    @app.delete("/instance/logout/{name}", tags=["instances"])
    async def logout_instance(request: Request, name: str) -> dict[str, Any]:
        state = gateway(request)
        instance = state.registry.get(name)
        if instance.state not in (InstanceState.CONNECTED, InstanceState.CONNECTING):
            raise NotConnectedError(instance.name, instance.state.value)
        await state.transport.close(instance.name, logout=True)
        return {"status": "SUCCESS", "error": False, "response": {"message": "Instance logged out"}}

    @app.delete("/instance/delete/{name}", tags=["instances"])
    async def delete_instance(request: Request, name: str) -> dict[str, Any]:
        state = gateway(request)
        had_connection = state.registry.delete(name)
        if had_connection:
            await state.transport.close(name.strip())
        return {"status": "SUCCESS", "error": False, "response": {"message": "Instance deleted"}}

    @app.post("/instance/simulate/{name}/{event}", tags=["simulation"])
    async def simulate(
        request: Request,
        name: str,
        event: str,
        logged_out: bool = Query(default=False, alias="loggedOut"),
        reason: str | None = None,
    ) -> dict[str, Any]:
        transport = gateway(request).transport
        if not isinstance(transport, SimulatedTransport):
            raise InvalidStateError(name, transport.name, "simulate events on")
        if event not in SIMULATED_EVENTS:
            raise InvalidArgumentError(f"Unknown simulated event: {event}", event=event)

        if event == "scan":
            instance = transport.scan(name)
        elif event == "open":
            instance = transport.open(name)
        elif event == "close":
            instance = transport.drop(name, logged_out=logged_out, reason=reason)
        else:
            instance = transport.fail(name, reason)

        if instance is None:
            raise NotFoundError(name)
        return {"instance": dump(ConnectionStateView.from_instance(instance))}

    @app.post("/webhook/{name}", tags=["webhook"])
    async def webhook(request: Request, name: str) -> dict[str, bool]:
        body = await request.body()
        logger.info(f"Webhook received for {name} ({len(body)} bytes)")
        return {"received": True}

    @app.get("/metrics", tags=["metrics"])
    async def get_metrics(request: Request) -> Response:
        """Get Prometheus metrics."""
        telemetry = gateway(request).telemetry
        if isinstance(telemetry, PrometheusTelemetry):
            return Response(content=telemetry.render(), media_type=telemetry.content_type)
        if isinstance(telemetry, InMemoryTelemetry):
            return Response(
                content="# Prometheus backend not enabled (telemetry.backend=memory)\n",
                media_type="text/plain; version=0.0.4; charset=utf-8",
            )
        return Response(content="", media_type="text/plain; version=0.0.4; charset=utf-8")

    return app


def run_server(config: Config, *, host: str | None = None, port: int | None = None) -> None:
    """Run the API server.

    This is a blocking call that runs the server until interrupted.
    """
    import uvicorn

    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.gateway.host,
        port=port or config.gateway.port,
        log_level=config.logging.level.lower(),
    )
