"""
Operator metrics helpers.

Defines the Prometheus metrics the operator exports: reconcile outcomes and
latency, store writes, work queue depth and retries, and watch traffic.
"""

from __future__ import annotations

import logging

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "consumer_autoscaler"


class OperatorMetrics:
    """Operator metrics bound to one collector registry."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else REGISTRY

        self.reconcile_total = self.create_counter(
            "reconcile_total",
            "Reconcile cycles by outcome",
            ["outcome", "error_kind"],
        )

        self.reconcile_duration = self.create_histogram(
            "reconcile_duration_seconds",
            "Time spent in a reconcile cycle",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
        )

        self.store_writes = self.create_counter(
            "store_writes_total",
            "Writes issued to the resource store",
            ["kind", "operation"],
        )

        self.queue_depth = self.create_gauge("queue_depth", "Keys waiting in the work queue")

        self.queue_adds = self.create_counter("queue_adds_total", "Keys added to the work queue")

        self.retries = self.create_counter("retries_total", "Rate-limited requeues after a failed cycle")

        self.watch_events = self.create_counter(
            "watch_events_total",
            "Watch notifications received",
            ["kind", "change_type"],
        )

    def create_counter(self, name: str, description: str, label_names: list[str] | None = None) -> Counter:
        """Create a counter metric.

        Args:
            name: Metric name (without the operator prefix)
            description: Metric description
            label_names: List of label names
        """
        return Counter(f"{METRIC_PREFIX}_{name}", description, label_names or [], registry=self.registry)

    def create_gauge(self, name: str, description: str, label_names: list[str] | None = None) -> Gauge:
        """Create a gauge metric."""
        return Gauge(f"{METRIC_PREFIX}_{name}", description, label_names or [], registry=self.registry)

    def create_histogram(
        self,
        name: str,
        description: str,
        label_names: list[str] | None = None,
        buckets: list[float] | None = None,
    ) -> Histogram:
        """Create a histogram metric."""
        kwargs = {"buckets": buckets} if buckets else {}
        return Histogram(
            f"{METRIC_PREFIX}_{name}",
            description,
            label_names or [],
            registry=self.registry,
            **kwargs,
        )


_default_metrics: OperatorMetrics | None = None


def get_operator_metrics() -> OperatorMetrics:
    """Process-wide metrics on the default registry."""
    global _default_metrics
    if _default_metrics is None:
        _default_metrics = OperatorMetrics()
    return _default_metrics


def start_metrics_server(port: int, registry: CollectorRegistry | None = None) -> None:
    """Expose /metrics on the given port."""
    start_http_server(port, registry=registry if registry is not None else REGISTRY)
    logger.info(f"Metrics endpoint listening on port {port}")
