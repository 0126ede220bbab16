"""Bridge transport: drives real sessions through the websocket bridge protocol v2."""

from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from typing import Any

from loguru import logger

from evogate.config.schema import TransportConfig
from evogate.core.errors import GatewayError, NotFoundError, TransportError
from evogate.core.models import InstanceState, SentMessage
from evogate.core.registry import InstanceRegistry
from evogate.transport.base import BaseTransport

PROTOCOL_VERSION = 2
HEALTH_TIMEOUT_SECONDS = 10.0


class BridgeCommandError(TransportError):
    """Bridge answered a command with ``ok: false``."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        super().__init__(f"{code}: {message}", bridge_code=code, retryable=retryable)
        self.bridge_code = code
        self.retryable = retryable


class BridgeTransport(BaseTransport):
    """Transport backed by an out-of-process WhatsApp bridge.

    QR tokens are minted by the bridge and arrive as ``qr`` frames, so this
    transport exposes no local token factory.
    """

    name = "bridge"

    def __init__(self, config: TransportConfig, registry: InstanceRegistry):
        super().__init__(config, registry)
        self._ws: Any | None = None
        self._connected = False
        self._run_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        # Per-instance futures resolved by the first qr/open frame after a connect.
        self._waiters: dict[str, asyncio.Future[str]] = {}

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        await super().start()
        logger.info(f"Connecting to WhatsApp bridge at {self.config.bridge_url}...")
        self._run_task = asyncio.create_task(self._connect_loop())

    async def stop(self) -> None:
        await super().stop()
        self._connected = False
        if self._run_task:
            self._run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._run_task
            self._run_task = None
        if self._ws:
            await self._ws.close()
            self._ws = None
        self._fail_pending("Transport stopped")
        self._fail_waiters("Transport stopped")

    # ── Transport operations ─────────────────────────────────────────────

    async def connect(self, instance_name: str) -> None:
        waiter = asyncio.get_running_loop().create_future()
        previous = self._waiters.pop(instance_name, None)
        if previous is not None and not previous.done():
            previous.cancel()
        self._waiters[instance_name] = waiter
        try:
            try:
                await self._send_command("connect", {"instance": instance_name})
            except BridgeCommandError as e:
                self.registry.mark_error(instance_name, e.message)
                raise
            timeout = self.config.qr_wait_timeout_ms / 1000.0
            try:
                outcome = await asyncio.wait_for(waiter, timeout=timeout)
            except TimeoutError:
                raise TransportError(
                    f"Bridge produced no QR code for {instance_name} within {timeout:.0f}s",
                    instance=instance_name,
                ) from None
            logger.debug(f"bridge: connect of {instance_name} settled with {outcome}")
        finally:
            if self._waiters.get(instance_name) is waiter:
                del self._waiters[instance_name]

    async def reconnect(self, instance_name: str) -> None:
        # The bridge resumes stored credentials or pushes a fresh QR on its own.
        await self._send_command("connect", {"instance": instance_name, "resume": True})

    async def send_text(self, message: SentMessage) -> None:
        await self._send_command(
            "send_text",
            {
                "instance": message.instance,
                "messageId": message.message_id,
                "to": message.to,
                "text": message.text,
            },
        )

    async def close(self, instance_name: str, *, logout: bool = False) -> None:
        self._cancel_retry(instance_name)
        if logout:
            await self._send_command("logout", {"instance": instance_name})
            # The bridge also emits a loggedOut close frame; whichever lands second is a no-op.
            self.registry.on_connection_closed(
                instance_name, reconnect_eligible=False, reason="logged out"
            )
            return
        try:
            await self._send_command("close", {"instance": instance_name})
        except TransportError as e:
            logger.warning(f"bridge: close of {instance_name} failed: {e.message}")

    # ── Socket lifecycle ─────────────────────────────────────────────────

    async def _connect_loop(self) -> None:
        import websockets

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        while self._running:
            try:
                async with websockets.connect(
                    self.config.bridge_url,
                    additional_headers=headers,
                    max_size=self.config.max_payload_bytes,
                    ping_interval=20,
                    ping_timeout=20,
                ) as ws:
                    self._ws = ws
                    reader = asyncio.create_task(self._read_loop())
                    try:
                        await self._verify_bridge_health()
                        self._connected = True
                        logger.info("Connected to WhatsApp bridge (protocol v2)")
                        await reader
                    finally:
                        reader.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await reader
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"WhatsApp bridge connection error: {e}")
            finally:
                was_connected = self._connected
                self._connected = False
                self._ws = None
                self._fail_pending("Bridge connection closed")
                self._fail_waiters("Bridge connection closed")
                if was_connected:
                    self._drop_connected_sessions()

            if not self._running:
                break
            logger.info(f"Reconnecting to bridge in {self.reconnect_delay_s:.1f}s...")
            await asyncio.sleep(self.reconnect_delay_s)

    async def _verify_bridge_health(self) -> None:
        response = await self._send_command("health", {}, timeout_seconds=HEALTH_TIMEOUT_SECONDS)
        version = response.get("protocolVersion", response.get("version"))
        if version != PROTOCOL_VERSION:
            raise TransportError(
                f"Bridge protocol mismatch: expected v{PROTOCOL_VERSION}, got {version!r}"
            )

    async def _read_loop(self) -> None:
        if not self._ws:
            return
        async for raw in self._ws:
            await self._handle_bridge_message(raw)

    def _drop_connected_sessions(self) -> None:
        for summary in self.registry.list():
            if summary.state is InstanceState.CONNECTED:
                self.registry.on_connection_closed(
                    summary.name, reconnect_eligible=True, reason="bridge connection lost"
                )

    # ── Frame translation ────────────────────────────────────────────────

    async def _handle_bridge_message(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON from bridge")
            return

        if not isinstance(data, dict):
            logger.warning("Invalid bridge frame shape")
            return

        version = data.get("version")
        if version != PROTOCOL_VERSION:
            logger.warning(f"Unexpected bridge protocol version: {version!r}")
            return

        msg_type = data.get("type")
        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if msg_type == "response":
            request_id = data.get("requestId")
            if isinstance(request_id, str):
                self._resolve_pending(request_id, payload)
            return

        name = str(payload.get("instance") or "").strip()
        if not name:
            logger.debug(f"Dropping {msg_type} frame without instance")
            return

        try:
            self._dispatch(msg_type, name, payload)
        except GatewayError as e:
            logger.warning(f"bridge: {msg_type} frame for {name} rejected: {e.message}")

    def _dispatch(self, msg_type: Any, name: str, payload: dict[str, Any]) -> None:
        if msg_type == "qr":
            token = str(payload.get("qr") or "")
            if not token:
                logger.warning(f"bridge: empty QR frame for {name}")
                return
            if self.registry.on_qr(name, token) is not None:
                self._settle_waiter(name, "qr")
            return

        if msg_type == "status":
            status = payload.get("status")
            logger.info(f"WhatsApp status for {name}: {status}")
            if status == "connecting" and self._state_of(name) is InstanceState.QR_READY:
                self.registry.on_qr_scanned(name)
            return

        if msg_type == "connection":
            connection = payload.get("connection")
            if connection == "open":
                self.registry.on_connection_open(name)
                self._settle_waiter(name, "open")
            elif connection == "close":
                logged_out = bool(payload.get("loggedOut", False))
                reason = str(payload.get("reason") or ("logged out" if logged_out else "connection closed"))
                self.registry.on_connection_closed(
                    name, reconnect_eligible=not logged_out, reason=reason
                )
                self._settle_waiter(name, error=f"Connection closed: {reason}")
            return

        if msg_type == "error":
            error = str(payload.get("error") or "bridge error")
            logger.error(f"WhatsApp bridge error for {name}: {error}")
            if payload.get("fatal"):
                self.registry.mark_error(name, error)
                self._settle_waiter(name, error=error)
            return

        logger.debug(f"Ignoring bridge frame type {msg_type!r}")

    def _state_of(self, name: str) -> InstanceState | None:
        try:
            return self.registry.get(name).state
        except NotFoundError:
            return None

    def _settle_waiter(self, name: str, outcome: str = "", *, error: str | None = None) -> None:
        waiter = self._waiters.get(name)
        if waiter is None or waiter.done():
            return
        if error is None:
            waiter.set_result(outcome)
        else:
            waiter.set_exception(TransportError(error, instance=name))

    def _forget(self, name: str) -> None:
        super()._forget(name)
        self._settle_waiter(name, error=f"Instance {name} was removed")

    def _fail_waiters(self, reason: str) -> None:
        for name, waiter in self._waiters.items():
            if not waiter.done():
                waiter.set_exception(TransportError(reason, instance=name))
        self._waiters.clear()

    # ── Command plumbing ─────────────────────────────────────────────────

    @property
    def _token(self) -> str:
        return (self.config.bridge_token or "").strip()

    async def _send_command(
        self,
        command_type: str,
        payload: dict[str, Any],
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        if not self._ws:
            raise TransportError("Bridge websocket not connected", command=command_type)

        request_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        envelope: dict[str, Any] = {
            "version": PROTOCOL_VERSION,
            "type": command_type,
            "requestId": request_id,
            "payload": payload,
        }
        if self._token:
            envelope["token"] = self._token

        timeout = timeout_seconds if timeout_seconds is not None else self.config.command_timeout_ms / 1000.0
        try:
            async with self._send_lock:
                await self._ws.send(json.dumps(envelope))
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            raise TransportError(
                f"Bridge command {command_type} timed out after {timeout:.0f}s",
                command=command_type,
            ) from None
        finally:
            self._pending.pop(request_id, None)
            future.cancel()

    def _resolve_pending(self, request_id: str, payload: dict[str, Any]) -> None:
        future = self._pending.get(request_id)
        if not future or future.done():
            return

        if payload.get("ok"):
            result = payload.get("result")
            future.set_result(result if isinstance(result, dict) else {})
            return

        error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
        future.set_exception(
            BridgeCommandError(
                str(error.get("code") or "ERR_INTERNAL"),
                str(error.get("message") or "Bridge command failed"),
                bool(error.get("retryable", False)),
            )
        )

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending.clear()
