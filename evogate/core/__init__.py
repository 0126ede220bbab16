"""Instance lifecycle core: models, errors and the registry."""

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
from evogate.core.models import Instance, InstanceState, InstanceSummary, QrCode, SentMessage
from evogate.core.registry import InstanceRegistry

__all__ = [
    "AlreadyConnectedError",
    "AlreadyExistsError",
    "ExpiredError",
    "GatewayError",
    "Instance",
    "InstanceRegistry",
    "InstanceState",
    "InstanceSummary",
    "InvalidArgumentError",
    "InvalidStateError",
    "NotConnectedError",
    "NotFoundError",
    "QrCode",
    "SentMessage",
    "TransportError",
]
