"""Simulated transport: locally issued QR codes and event injection."""

from __future__ import annotations

import asyncio
import contextlib

from loguru import logger

from evogate.config.schema import TransportConfig
from evogate.core.errors import GatewayError
from evogate.core.models import Instance, InstanceState, SentMessage
from evogate.core.ports import TokenFactory
from evogate.core.registry import InstanceRegistry, new_qr_token
from evogate.transport.base import BaseTransport


class SimulatedTransport(BaseTransport):
    """Transport with no wire behind it.

    Sessions only move when something calls ``scan``/``open``/``drop``/``fail``
    (tests, the ``/instance/simulate`` routes), or, with ``auto_connect_ms`` set,
    when the demo timer walks a freshly issued QR through scan and open.
    """

    name = "simulated"

    def __init__(self, config: TransportConfig, registry: InstanceRegistry):
        super().__init__(config, registry)
        self.outbox: list[SentMessage] = []
        self._auto_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def token_factory(self) -> TokenFactory | None:
        return new_qr_token

    async def stop(self) -> None:
        for name in list(self._auto_tasks):
            await self._cancel_auto(name)
        await super().stop()

    async def connect(self, instance_name: str) -> None:
        if self.config.auto_connect_ms <= 0 or instance_name in self._auto_tasks:
            return
        task = asyncio.create_task(self._auto_progress(instance_name))
        self._auto_tasks[instance_name] = task
        task.add_done_callback(lambda t, key=instance_name: self._forget_auto(key, t))

    async def reconnect(self, instance_name: str) -> None:
        instance = self.registry.get(instance_name)
        if instance.state is InstanceState.CONNECTING:
            # Session credentials survived the drop; resume without a new QR.
            self.open(instance_name)
        elif instance.state is InstanceState.DISCONNECTED:
            self.registry.on_qr(instance_name, new_qr_token())

    async def send_text(self, message: SentMessage) -> None:
        self.outbox.append(message)
        logger.debug(f"simulated: delivered {message.message_id} to {message.to}")

    async def close(self, instance_name: str, *, logout: bool = False) -> None:
        await self._cancel_auto(instance_name)
        self._cancel_retry(instance_name)
        if logout:
            self.drop(instance_name, logged_out=True, reason="logged out")

    # ── Event injection ──────────────────────────────────────────────────

    def scan(self, instance_name: str, token: str | None = None) -> Instance | None:
        return self.registry.on_qr_scanned(instance_name, token)

    def open(self, instance_name: str) -> Instance | None:
        return self.registry.on_connection_open(instance_name)

    def drop(
        self,
        instance_name: str,
        *,
        logged_out: bool = False,
        reason: str | None = None,
    ) -> Instance | None:
        return self.registry.on_connection_closed(
            instance_name,
            reconnect_eligible=not logged_out,
            reason=reason or ("logged out" if logged_out else "connection lost"),
        )

    def fail(self, instance_name: str, reason: str | None = None) -> Instance | None:
        return self.registry.on_connection_failed(instance_name, reason or "pairing failed")

    # ── Demo progression ─────────────────────────────────────────────────

    async def _auto_progress(self, name: str) -> None:
        delay = self.config.auto_connect_ms / 1000.0
        try:
            await asyncio.sleep(delay)
            if self.scan(name) is None:
                return
            await asyncio.sleep(delay)
            self.open(name)
        except GatewayError as e:
            logger.info(f"simulated: auto-connect of {name} stopped: {e.message}")

    def on_removed(self, name: str) -> None:
        task = self._auto_tasks.pop(name, None)
        if task is not None:
            try:
                in_loop = asyncio.get_running_loop() is task.get_loop()
            except RuntimeError:
                in_loop = False
            if in_loop:
                task.cancel()
            else:
                task.get_loop().call_soon_threadsafe(task.cancel)
        super().on_removed(name)

    def _forget_auto(self, name: str, task: asyncio.Task[None]) -> None:
        if self._auto_tasks.get(name) is task:
            del self._auto_tasks[name]

    async def _cancel_auto(self, name: str) -> None:
        task = self._auto_tasks.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
