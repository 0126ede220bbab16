"""Typed error hierarchy for instance lifecycle operations."""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for recoverable gateway errors."""

    code = "gateway_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class InvalidArgumentError(GatewayError, ValueError):
    """Missing, empty or malformed caller input."""

    code = "invalid_argument"


class NotFoundError(GatewayError, LookupError):
    """Unknown instance name."""

    code = "not_found"

    def __init__(self, name: str):
        super().__init__(f"Instance not found: {name}", instance=name)
        self.name = name


class AlreadyExistsError(GatewayError):
    """Duplicate create."""

    code = "already_exists"

    def __init__(self, name: str):
        super().__init__(f"Instance already exists: {name}", instance=name)
        self.name = name


class AlreadyConnectedError(GatewayError):
    """QR requested for an instance that is already connected."""

    code = "already_connected"

    def __init__(self, name: str):
        super().__init__(f"Instance already connected: {name}", instance=name)
        self.name = name


class NotConnectedError(GatewayError):
    """Send attempted outside the connected state."""

    code = "not_connected"

    def __init__(self, name: str, state: str):
        super().__init__(f"Instance {name} is not connected (state={state})", instance=name, state=state)
        self.name = name
        self.state = state


class InvalidStateError(GatewayError):
    """Operation not permitted from the instance's current state."""

    code = "invalid_state"

    def __init__(self, name: str, state: str, operation: str):
        super().__init__(
            f"Cannot {operation} instance {name} in state {state}",
            instance=name,
            state=state,
        )
        self.name = name
        self.state = state


class ExpiredError(GatewayError):
    """QR token read or used after its TTL."""

    code = "expired"

    def __init__(self, name: str):
        super().__init__(f"QR code expired for instance {name}", instance=name)
        self.name = name


class TransportError(GatewayError, RuntimeError):
    """Opaque failure surfaced by the transport collaborator."""

    code = "transport_error"
