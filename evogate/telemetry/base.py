"""Telemetry port consumed by the instance registry."""

from __future__ import annotations

from typing import Protocol, TypeAlias, runtime_checkable

Labels: TypeAlias = tuple[tuple[str, str], ...]


def normalize_labels(labels: Labels | None) -> Labels:
    """Order labels by key so ``(("to", x), ("from", y))`` and its reverse match."""
    return tuple(sorted(labels or ()))


@runtime_checkable
class TelemetryPort(Protocol):
    """Sink for the lifecycle metrics the registry records.

    Counters track events (``instances_created_total``,
    ``state_transitions_total{from,to}``, ``qr_issued_total{source}``), the
    ``instances`` gauge tracks registry size and the
    ``pairing_duration_seconds`` histogram measures QR issue to open.
    """

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        """Add ``value`` to a counter."""

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        """Set a gauge to ``value``."""

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None:
        """Record one observation."""
