"""Prometheus metrics backend for evogate observability.

Metrics live in a dedicated ``CollectorRegistry`` and are exposed by the HTTP
API at ``/metrics``.

Usage:
    telemetry = PrometheusTelemetry()
    telemetry.incr("qr_issued_total", labels=(("source", "local"),))
    payload = telemetry.render()
"""

from __future__ import annotations

from loguru import logger
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from evogate.telemetry.base import Labels

METRIC_PREFIX = "evogate_"


class PrometheusTelemetry:
    """Prometheus-backed telemetry.

    Standard lifecycle metrics are registered up front; unknown names are
    created ad hoc on first use with the label names of that first call.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._metrics: dict[str, Counter | Gauge | Histogram] = {}
        self._register_standard_metrics()
        logger.debug("Prometheus telemetry initialised")

    def _register_standard_metrics(self) -> None:
        self._metrics["instances_created_total"] = Counter(
            f"{METRIC_PREFIX}instances_created_total",
            "Total instances created",
            registry=self.registry,
        )
        self._metrics["instances_deleted_total"] = Counter(
            f"{METRIC_PREFIX}instances_deleted_total",
            "Total instances deleted",
            labelnames=["reason"],  # reason=api/logged_out
            registry=self.registry,
        )
        self._metrics["state_transitions_total"] = Counter(
            f"{METRIC_PREFIX}state_transitions_total",
            "Instance state transitions",
            labelnames=["from", "to"],
            registry=self.registry,
        )
        self._metrics["qr_issued_total"] = Counter(
            f"{METRIC_PREFIX}qr_issued_total",
            "QR tokens issued",
            labelnames=["source"],  # source=local/transport
            registry=self.registry,
        )
        self._metrics["qr_expired_total"] = Counter(
            f"{METRIC_PREFIX}qr_expired_total",
            "QR tokens expired before scan",
            registry=self.registry,
        )
        self._metrics["messages_accepted_total"] = Counter(
            f"{METRIC_PREFIX}messages_accepted_total",
            "Messages accepted for sending",
            registry=self.registry,
        )
        self._metrics["instances"] = Gauge(
            f"{METRIC_PREFIX}instances",
            "Instances currently tracked",
            registry=self.registry,
        )
        self._metrics["pairing_duration_seconds"] = Histogram(
            f"{METRIC_PREFIX}pairing_duration_seconds",
            "Seconds between QR issuance and connection open",
            buckets=[1.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0, 300.0],
            registry=self.registry,
        )

    def _get_or_create(self, kind: type, name: str, labels: Labels):
        metric = self._metrics.get(name)
        if metric is None:
            labelnames = [k for k, _ in labels] if labels else []
            metric = kind(
                f"{METRIC_PREFIX}{name}",
                f"{kind.__name__}: {name}",
                labelnames=labelnames,
                registry=self.registry,
            )
            self._metrics[name] = metric
        if labels:
            return metric.labels(**dict(labels))
        return metric

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        """Increase a named counter."""
        self._get_or_create(Counter, name, labels).inc(value)

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        """Set a gauge value."""
        self._get_or_create(Gauge, name, labels).set(value)

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None:
        """Observe a histogram value."""
        self._get_or_create(Histogram, name, labels).observe(value)

    def render(self) -> bytes:
        """Text exposition of every metric in this backend's registry."""
        return generate_latest(self.registry)
