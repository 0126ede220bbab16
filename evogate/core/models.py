"""Domain models for the instance lifecycle core."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class InstanceState(str, Enum):
    """Connection lifecycle states."""

    CREATED = "created"
    QR_READY = "qr_ready"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"

    @property
    def evolution_state(self) -> str:
        """Connection state string used by Evolution-style clients."""
        if self is InstanceState.CONNECTED:
            return "open"
        if self in (InstanceState.QR_READY, InstanceState.CONNECTING):
            return "connecting"
        return "close"


@dataclass(slots=True, kw_only=True)
class Instance:
    """One logical messaging endpoint tracked by the registry."""

    name: str
    state: InstanceState
    created_at: datetime
    last_activity_at: datetime
    connected_at: datetime | None = None
    qr_token: str | None = None
    qr_issued_at: datetime | None = None
    error_reason: str | None = None
    disconnect_reason: str | None = None

    def qr_expires_at(self, ttl_seconds: float) -> datetime | None:
        if self.qr_issued_at is None:
            return None
        return self.qr_issued_at + timedelta(seconds=ttl_seconds)

    def is_qr_expired(self, now: datetime, ttl_seconds: float) -> bool:
        expires_at = self.qr_expires_at(ttl_seconds)
        return expires_at is not None and now >= expires_at

    def summary(self) -> InstanceSummary:
        return InstanceSummary(
            name=self.name,
            state=self.state,
            created_at=self.created_at,
            connected_at=self.connected_at,
            last_activity_at=self.last_activity_at,
            has_qr=self.qr_token is not None,
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class InstanceSummary:
    """Read-only view returned by list operations."""

    name: str
    state: InstanceState
    created_at: datetime
    connected_at: datetime | None
    last_activity_at: datetime
    has_qr: bool


@dataclass(frozen=True, slots=True, kw_only=True)
class QrCode:
    """Current QR credential of an instance."""

    instance: str
    token: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True, slots=True, kw_only=True)
class SentMessage:
    """Message accepted for sending; acceptance does not imply delivery."""

    message_id: str
    instance: str
    to: str
    text: str
    accepted_at: datetime
