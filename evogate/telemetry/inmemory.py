"""In-memory telemetry, the default backend and the one tests read back."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TypeAlias

from evogate.telemetry.base import Labels, normalize_labels

MetricKey: TypeAlias = tuple[str, Labels]


@dataclass
class InMemoryTelemetry:
    """Keeps every metric in plain dicts keyed by ``(name, sorted labels)``."""

    counters: Counter[MetricKey] = field(default_factory=Counter)
    gauges: dict[MetricKey, float] = field(default_factory=dict)
    histograms: dict[MetricKey, list[float]] = field(default_factory=dict)

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        self.counters[(name, normalize_labels(labels))] += value

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        self.gauges[(name, normalize_labels(labels))] = value

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None:
        self.histograms.setdefault((name, normalize_labels(labels)), []).append(value)

    # ── Readback ─────────────────────────────────────────────────────────

    def get_counter(self, name: str, labels: Labels = ()) -> int:
        return self.counters[(name, normalize_labels(labels))]

    def get_gauge(self, name: str, labels: Labels = ()) -> float | None:
        return self.gauges.get((name, normalize_labels(labels)))

    def get_histogram_values(self, name: str, labels: Labels = ()) -> list[float]:
        return list(self.histograms.get((name, normalize_labels(labels)), []))

    def transitions(self) -> dict[tuple[str, str], int]:
        """State transition counts as ``{(from, to): count}``."""
        result: dict[tuple[str, str], int] = {}
        for (name, labels), count in self.counters.items():
            if name != "state_transitions_total":
                continue
            by_key = dict(labels)
            result[(by_key.get("from", ""), by_key.get("to", ""))] = count
        return result
