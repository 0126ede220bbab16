"""Session transports."""

from evogate.transport.base import BaseTransport
from evogate.transport.factory import build_transport
from evogate.transport.simulated import SimulatedTransport

__all__ = ["BaseTransport", "SimulatedTransport", "build_transport"]
