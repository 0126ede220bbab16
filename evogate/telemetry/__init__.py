"""Telemetry backends for evogate observability.

Provides both in-memory (default, tests) and Prometheus (scraping) backends.
"""

from evogate.telemetry.base import TelemetryPort
from evogate.telemetry.inmemory import InMemoryTelemetry
from evogate.telemetry.prometheus import PrometheusTelemetry

__all__ = [
    "TelemetryPort",
    "InMemoryTelemetry",
    "PrometheusTelemetry",
    "build_telemetry",
]


def build_telemetry(backend: str) -> TelemetryPort:
    """Create the configured telemetry backend."""
    if backend == "prometheus":
        return PrometheusTelemetry()
    return InMemoryTelemetry()
