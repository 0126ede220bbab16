"""Transport selection."""

from __future__ import annotations

from evogate.config.schema import Config
from evogate.core.registry import InstanceRegistry
from evogate.transport.base import BaseTransport


def build_transport(config: Config, registry: InstanceRegistry) -> BaseTransport:
    """Build the transport named by ``transport.mode`` and bind the registry's token source to it."""
    mode = config.transport.mode
    if mode == "simulated":
        from evogate.transport.simulated import SimulatedTransport

        transport: BaseTransport = SimulatedTransport(config.transport, registry)
    elif mode == "bridge":
        from evogate.transport.bridge import BridgeTransport

        transport = BridgeTransport(config.transport, registry)
    else:
        raise ValueError(f"Unknown transport mode: {mode!r}")

    registry.token_factory = transport.token_factory
    return transport
