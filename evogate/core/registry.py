"""In-process instance registry and connection lifecycle state machine."""

from __future__ import annotations

import base64
import secrets
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Literal, TypeAlias

from loguru import logger

from evogate.core.errors import (
    AlreadyConnectedError,
    AlreadyExistsError,
    ExpiredError,
    InvalidArgumentError,
    InvalidStateError,
    NotConnectedError,
    NotFoundError,
    TransportError,
)
from evogate.core.models import Instance, InstanceState, InstanceSummary, QrCode, SentMessage
from evogate.core.ports import Clock, LifecycleListener, TokenFactory
from evogate.telemetry.base import TelemetryPort
from evogate.utils.helpers import normalize_jid, truncate_string, utc_now

LoggedOutPolicy: TypeAlias = Literal["delete", "mark"]

DEFAULT_QR_TTL_SECONDS = 60


def new_qr_token() -> str:
    """Generate an opaque pairing credential shaped like a multi-device QR payload."""
    ref = f"2@{secrets.token_urlsafe(36)}"
    keys = [base64.b64encode(secrets.token_bytes(32)).decode("ascii") for _ in range(3)]
    return ",".join([ref, *keys])


def new_message_id() -> str:
    """Generate a WhatsApp-web style message id."""
    return "3EB0" + secrets.token_hex(8).upper()


class InstanceRegistry:
    """Owns every tracked instance and drives its connection state machine.

    All operations run under one re-entrant lock, so concurrent callers never
    observe a half-applied transition. QR expiry is evaluated lazily on
    access; ``sweep_expired`` offers the same check eagerly.

    Transport callbacks (``on_*`` and ``mark_error``) return ``None`` when the
    instance no longer exists so late events after a delete are no-ops.
    """

    def __init__(
        self,
        *,
        qr_ttl_seconds: float = DEFAULT_QR_TTL_SECONDS,
        logged_out_policy: LoggedOutPolicy = "delete",
        token_factory: TokenFactory | None = new_qr_token,
        clock: Clock = utc_now,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        if qr_ttl_seconds <= 0:
            raise ValueError("qr_ttl_seconds must be positive")
        if logged_out_policy not in ("delete", "mark"):
            raise ValueError(f"Unknown logged-out policy: {logged_out_policy!r}")
        self.qr_ttl_seconds = qr_ttl_seconds
        self.logged_out_policy = logged_out_policy
        self.token_factory = token_factory
        self._clock = clock
        self._telemetry = telemetry
        self._lock = threading.RLock()
        self._instances: dict[str, Instance] = {}
        self._listeners: list[LifecycleListener] = []
        # Names whose last QR lapsed unscanned; tells "expired" from "not issued yet".
        self._qr_expired: set[str] = set()
        self._pairing_started: dict[str, datetime] = {}

    # ── Registry operations ──────────────────────────────────────────────

    def create(self, name: str | None) -> Instance:
        key = self._normalize_name(name)
        with self._lock:
            if key in self._instances:
                raise AlreadyExistsError(key)
            now = self._clock()
            instance = Instance(
                name=key,
                state=InstanceState.CREATED,
                created_at=now,
                last_activity_at=now,
            )
            self._instances[key] = instance
            logger.info(f"Instance created: {key}")
            self._incr("instances_created_total")
            self._gauge_size()
            return replace(instance)

    def get(self, name: str | None) -> Instance:
        with self._lock:
            instance = self._require(name)
            self._expire_if_needed(instance, self._clock())
            return replace(instance)

    get_status = get

    def list(self) -> list[InstanceSummary]:
        with self._lock:
            now = self._clock()
            for instance in self._instances.values():
                self._expire_if_needed(instance, now)
            return [instance.summary() for instance in self._instances.values()]

    def delete(self, name: str | None) -> bool:
        """Remove an instance.

        Returns True when the instance had a live or in-progress connection,
        signalling the caller to close the underlying transport session.
        """
        key = self._normalize_name(name)
        with self._lock:
            instance = self._instances.pop(key, None)
            if instance is None:
                raise NotFoundError(key)
            had_connection = instance.state in (InstanceState.CONNECTED, InstanceState.CONNECTING)
            self._clear_qr(instance)
            self._qr_expired.discard(key)
            self._pairing_started.pop(key, None)
            logger.info(f"Instance deleted: {key} (state={instance.state.value})")
            self._incr("instances_deleted_total", labels=(("reason", "api"),))
            self._gauge_size()
            self._notify_removed(key)
            return had_connection

    def request_qr(self, name: str | None) -> QrCode:
        with self._lock:
            instance = self._require(name)
            now = self._clock()
            self._expire_if_needed(instance, now)

            if instance.state is InstanceState.CONNECTED:
                raise AlreadyConnectedError(instance.name)
            if instance.state in (InstanceState.CONNECTING, InstanceState.ERROR):
                raise InvalidStateError(instance.name, instance.state.value, "request a QR code for")

            if instance.qr_token is not None and instance.qr_issued_at is not None:
                return self._qr_view(instance.name, instance.qr_token, instance.qr_issued_at)

            if self.token_factory is None:
                if instance.name in self._qr_expired:
                    raise ExpiredError(instance.name)
                raise TransportError(
                    f"No QR code issued by the transport yet for {instance.name}",
                    instance=instance.name,
                )

            token = self.token_factory()
            self._issue_qr(instance, token, now, source="local")
            return self._qr_view(instance.name, token, now)

    def send_message(self, name: str | None, to: str | None, text: str | None) -> SentMessage:
        with self._lock:
            instance = self._require(name)
            if instance.state is not InstanceState.CONNECTED:
                raise NotConnectedError(instance.name, instance.state.value)

            jid = normalize_jid(to or "")
            if not jid:
                raise InvalidArgumentError("Recipient number is required", field="number")
            if not text or not text.strip():
                raise InvalidArgumentError("Message text is required", field="text")

            now = self._clock()
            instance.last_activity_at = now
            message = SentMessage(
                message_id=new_message_id(),
                instance=instance.name,
                to=jid,
                text=text,
                accepted_at=now,
            )
            logger.info(
                f"Message accepted: {instance.name} -> {jid} id={message.message_id} "
                f"text={truncate_string(text, 40)!r}"
            )
            self._incr("messages_accepted_total")
            return message

    def sweep_expired(self) -> int:
        """Expire stale QR tokens now instead of on next access."""
        with self._lock:
            now = self._clock()
            return sum(1 for instance in self._instances.values() if self._expire_if_needed(instance, now))

    # ── Transport events ─────────────────────────────────────────────────

    def on_qr(self, name: str, token: str) -> Instance | None:
        """Transport pushed a fresh QR credential."""
        if not token:
            raise InvalidArgumentError("QR token must not be empty", instance=name)
        with self._lock:
            instance = self._lookup(name, "qr")
            if instance is None:
                return None
            if instance.state in (InstanceState.CONNECTED, InstanceState.ERROR):
                logger.debug(f"Ignoring QR for {name} in state {instance.state.value}")
                return replace(instance)
            self._issue_qr(instance, token, self._clock(), source="transport")
            return replace(instance)

    def on_qr_scanned(self, name: str, token: str | None = None) -> Instance | None:
        """Mobile client scanned the QR code; pairing is in progress."""
        with self._lock:
            instance = self._lookup(name, "scan")
            if instance is None:
                return None
            now = self._clock()
            if self._expire_if_needed(instance, now):
                raise ExpiredError(instance.name)
            if instance.state is not InstanceState.QR_READY:
                raise InvalidStateError(instance.name, instance.state.value, "scan")
            if token is not None and token != instance.qr_token:
                raise InvalidArgumentError("QR token does not match the current code", instance=instance.name)

            if instance.qr_issued_at is not None:
                self._pairing_started[instance.name] = instance.qr_issued_at
            self._clear_qr(instance)
            self._transition(instance, InstanceState.CONNECTING, now)
            return replace(instance)

    def on_connection_open(self, name: str) -> Instance | None:
        """Transport established the session."""
        with self._lock:
            instance = self._lookup(name, "open")
            if instance is None:
                return None
            if instance.state is InstanceState.ERROR:
                raise InvalidStateError(instance.name, instance.state.value, "open")
            if instance.state is InstanceState.CONNECTED:
                return replace(instance)

            now = self._clock()
            started = self._pairing_started.pop(instance.name, None) or instance.qr_issued_at
            self._clear_qr(instance)
            self._qr_expired.discard(instance.name)
            instance.connected_at = now
            instance.disconnect_reason = None
            self._transition(instance, InstanceState.CONNECTED, now)
            if started is not None and self._telemetry is not None:
                self._telemetry.histogram("pairing_duration_seconds", (now - started).total_seconds())
            return replace(instance)

    def on_connection_failed(self, name: str, reason: str | None = None) -> Instance | None:
        """Pairing or reconnect attempt failed before the session opened."""
        with self._lock:
            instance = self._lookup(name, "failure")
            if instance is None:
                return None
            if instance.state is InstanceState.CONNECTED:
                return self.on_connection_closed(name, reconnect_eligible=True, reason=reason)
            if instance.state not in (InstanceState.CONNECTING, InstanceState.QR_READY):
                logger.debug(f"Ignoring connection failure for {name} in state {instance.state.value}")
                return replace(instance)
            self._fail(instance, reason, reconnect_eligible=True)
            return replace(instance)

    def on_connection_closed(
        self,
        name: str,
        *,
        reconnect_eligible: bool = True,
        reason: str | None = None,
    ) -> Instance | None:
        """Transport dropped the session.

        A reconnect-eligible drop of a connected instance goes back to
        ``connecting``; a logged-out drop ends in ``disconnected`` and, under the
        ``delete`` policy, removes the instance from the registry.
        """
        with self._lock:
            instance = self._lookup(name, "close")
            if instance is None:
                return None

            if instance.state in (InstanceState.CONNECTING, InstanceState.QR_READY):
                self._fail(instance, reason, reconnect_eligible=reconnect_eligible)
                return replace(instance)
            if instance.state is not InstanceState.CONNECTED:
                logger.debug(f"Ignoring close for {name} in state {instance.state.value}")
                return replace(instance)

            now = self._clock()
            instance.connected_at = None
            instance.disconnect_reason = reason
            if reconnect_eligible:
                self._transition(instance, InstanceState.CONNECTING, now)
            else:
                self._transition(instance, InstanceState.DISCONNECTED, now)
                if self.logged_out_policy == "delete":
                    del self._instances[instance.name]
                    self._qr_expired.discard(instance.name)
                    logger.info(f"Instance {instance.name} logged out; removed from registry")
                    self._incr("instances_deleted_total", labels=(("reason", "logged_out"),))
                    self._gauge_size()
            snapshot = replace(instance)
            self._notify_disconnected(snapshot, reconnect_eligible)
            if instance.name not in self._instances:
                self._notify_removed(instance.name)
            return snapshot

    def mark_error(self, name: str, reason: str) -> Instance | None:
        """Unrecoverable setup failure; only delete and recreate leave this state."""
        with self._lock:
            instance = self._lookup(name, "error")
            if instance is None:
                return None
            self._clear_qr(instance)
            instance.connected_at = None
            instance.error_reason = reason
            self._pairing_started.pop(instance.name, None)
            logger.error(f"Instance {instance.name} failed: {reason}")
            self._transition(instance, InstanceState.ERROR, self._clock())
            return replace(instance)

    # ── Listeners ────────────────────────────────────────────────────────

    def add_listener(self, listener: LifecycleListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: LifecycleListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ── Introspection ────────────────────────────────────────────────────

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return isinstance(name, str) and name.strip() in self._instances

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _normalize_name(name: str | None) -> str:
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgumentError("Instance name is required", field="instanceName")
        return name.strip()

    def _require(self, name: str | None) -> Instance:
        key = self._normalize_name(name)
        instance = self._instances.get(key)
        if instance is None:
            raise NotFoundError(key)
        return instance

    def _lookup(self, name: str, event: str) -> Instance | None:
        instance = self._instances.get((name or "").strip())
        if instance is None:
            logger.debug(f"Dropping late {event} event for unknown instance {name!r}")
        return instance

    def _qr_view(self, name: str, token: str, issued_at: datetime) -> QrCode:
        return QrCode(
            instance=name,
            token=token,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=self.qr_ttl_seconds),
        )

    def _issue_qr(self, instance: Instance, token: str, now: datetime, *, source: str) -> None:
        instance.qr_token = token
        instance.qr_issued_at = now
        instance.error_reason = None
        self._qr_expired.discard(instance.name)
        self._incr("qr_issued_total", labels=(("source", source),))
        if instance.state is InstanceState.QR_READY:
            instance.last_activity_at = now
            logger.debug(f"QR refreshed for {instance.name}")
        else:
            self._transition(instance, InstanceState.QR_READY, now)

    def _expire_if_needed(self, instance: Instance, now: datetime) -> bool:
        if instance.state is not InstanceState.QR_READY or instance.qr_token is None:
            return False
        if not instance.is_qr_expired(now, self.qr_ttl_seconds):
            return False
        self._clear_qr(instance)
        self._qr_expired.add(instance.name)
        logger.info(f"QR code expired for {instance.name}")
        self._incr("qr_expired_total")
        self._transition(instance, InstanceState.CREATED, now)
        return True

    def _fail(self, instance: Instance, reason: str | None, *, reconnect_eligible: bool) -> None:
        self._clear_qr(instance)
        self._pairing_started.pop(instance.name, None)
        instance.disconnect_reason = reason
        self._transition(instance, InstanceState.DISCONNECTED, self._clock())
        self._notify_disconnected(replace(instance), reconnect_eligible)

    @staticmethod
    def _clear_qr(instance: Instance) -> None:
        instance.qr_token = None
        instance.qr_issued_at = None

    def _transition(self, instance: Instance, new: InstanceState, now: datetime) -> None:
        old = instance.state
        instance.last_activity_at = now
        if old is new:
            return
        instance.state = new
        logger.info(f"Instance {instance.name}: {old.value} -> {new.value}")
        self._incr("state_transitions_total", labels=(("from", old.value), ("to", new.value)))
        snapshot = replace(instance)
        for listener in list(self._listeners):
            try:
                listener.on_state_change(snapshot, old, new)
            except Exception as e:
                logger.warning(f"Lifecycle listener failed on state change for {instance.name}: {e}")

    def _notify_disconnected(self, instance: Instance, reconnect_eligible: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_disconnected(instance, reconnect_eligible)
            except Exception as e:
                logger.warning(f"Lifecycle listener failed on disconnect for {instance.name}: {e}")

    def _notify_removed(self, name: str) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_removed(name)
            except Exception as e:
                logger.warning(f"Lifecycle listener failed on removal of {name}: {e}")

    def _incr(self, name: str, labels: tuple[tuple[str, str], ...] = ()) -> None:
        if self._telemetry is not None:
            self._telemetry.incr(name, labels=labels)

    def _gauge_size(self) -> None:
        if self._telemetry is not None:
            self._telemetry.gauge("instances", float(len(self._instances)))
