"""Port interfaces consumed by the lifecycle core."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from evogate.core.models import Instance, InstanceState


class LifecycleListener(Protocol):
    """Observer of registry transitions (transports, tests, metrics)."""

    def on_state_change(self, instance: Instance, old: InstanceState, new: InstanceState) -> None:
        """Called after every state transition."""

    def on_disconnected(self, instance: Instance, reconnect_eligible: bool) -> None:
        """Called when a transport reported a dropped or failed connection."""

    def on_removed(self, name: str) -> None:
        """Called after an instance left the registry (delete or logged-out close)."""


class Clock(Protocol):
    """Source of aware UTC timestamps."""

    def __call__(self) -> datetime:
        """Return the current time."""


class TokenFactory(Protocol):
    """Generator of opaque QR credentials."""

    def __call__(self) -> str:
        """Return a fresh token."""
