"""Base transport interface for WhatsApp session backends."""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod

from loguru import logger

from evogate.config.schema import TransportConfig
from evogate.core.models import Instance, InstanceState, SentMessage
from evogate.core.ports import TokenFactory
from evogate.core.registry import InstanceRegistry


class BaseTransport(ABC):
    """
    Abstract base class for transports.

    A transport owns the real (or simulated) WhatsApp sessions and translates
    its events into registry hooks. It also listens to the registry: when a
    connection drops and is reconnect-eligible, the transport retries after a
    fixed delay.
    """

    name: str = "base"

    def __init__(self, config: TransportConfig, registry: InstanceRegistry):
        self.config = config
        self.registry = registry
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        registry.add_listener(self)

    @property
    def token_factory(self) -> TokenFactory | None:
        """Local QR token generator, or None when tokens come from the transport."""
        return None

    @property
    def reconnect_delay_s(self) -> float:
        return self.config.reconnect_delay_ms / 1000.0

    async def start(self) -> None:
        """Bind to the running loop and begin accepting work."""
        self._loop = asyncio.get_running_loop()
        self._running = True

    async def stop(self) -> None:
        """Cancel pending retries and release resources."""
        self._running = False
        for task in list(self._retry_tasks.values()):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._retry_tasks.clear()

    @abstractmethod
    async def connect(self, instance_name: str) -> None:
        """Begin (or resume) a pairing session for an instance."""

    @abstractmethod
    async def send_text(self, message: SentMessage) -> None:
        """Hand an accepted message to the wire."""

    @abstractmethod
    async def close(self, instance_name: str, *, logout: bool = False) -> None:
        """Close the session; ``logout`` also unlinks the device."""

    # ── LifecycleListener ────────────────────────────────────────────────

    def on_state_change(self, instance: Instance, old: InstanceState, new: InstanceState) -> None:
        if new is InstanceState.CONNECTED:
            self._cancel_retry(instance.name)

    def on_disconnected(self, instance: Instance, reconnect_eligible: bool) -> None:
        if not reconnect_eligible:
            self._cancel_retry(instance.name)
            return
        if not self._running or self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._schedule_retry, instance.name)

    def on_removed(self, name: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self._forget(name)
            return
        # Queued behind any retry the same removal scheduled via on_disconnected.
        loop.call_soon_threadsafe(self._forget, name)

    def _forget(self, name: str) -> None:
        """Drop every pending timer for a name that left the registry."""
        if name in self._retry_tasks:
            logger.debug(f"{self.name}: cancelling pending reconnect of removed instance {name}")
        self._cancel_retry(name)

    def _schedule_retry(self, name: str) -> None:
        if name in self._retry_tasks:
            return
        logger.info(f"{self.name}: reconnecting {name} in {self.reconnect_delay_s:.1f}s")
        task = asyncio.create_task(self._retry_after_delay(name))
        self._retry_tasks[name] = task
        task.add_done_callback(lambda t, key=name: self._forget_retry(key, t))

    def _forget_retry(self, name: str, task: asyncio.Task[None]) -> None:
        if self._retry_tasks.get(name) is task:
            del self._retry_tasks[name]

    async def _retry_after_delay(self, name: str) -> None:
        await asyncio.sleep(self.reconnect_delay_s)
        # Past the delay the retry can no longer be cancelled by a state change.
        self._forget_retry(name, asyncio.current_task())
        if not self._running or name not in self.registry:
            logger.debug(f"{self.name}: skipping reconnect of {name}; instance gone or transport stopped")
            return
        try:
            await self.reconnect(name)
        except Exception as e:
            logger.warning(f"{self.name}: reconnect of {name} failed: {e}")

    async def reconnect(self, instance_name: str) -> None:
        """Retry hook; defaults to a fresh connect."""
        await self.connect(instance_name)

    def _cancel_retry(self, name: str) -> None:
        task = self._retry_tasks.pop(name, None)
        if task is not None:
            task.cancel()

    @property
    def is_running(self) -> bool:
        return self._running
