"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from taskbroker.constants import (
    METRIC_DELIVERIES,
    METRIC_HANDLER_DURATION,
    METRIC_RETRIES_EXHAUSTED,
    METRIC_RETRIES_PENDING,
    METRIC_RETRIES_REPUBLISHED,
    METRIC_RETRIES_SCHEDULED,
    METRIC_SIGNATURE_FAILURES,
    METRIC_TASKS_PUBLISHED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for task dispatch.

    Collects metrics for:
    - Task publishes
    - Delivery outcomes and signature failures
    - Handler execution duration
    - Retry scheduling, exhaustion and republishing
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.tasks_published = Counter(
            METRIC_TASKS_PUBLISHED,
            "Total number of tasks published",
            ["queue"],
            registry=self._registry,
        )

        self.deliveries = Counter(
            METRIC_DELIVERIES,
            "Total number of deliveries by outcome",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.signature_failures = Counter(
            METRIC_SIGNATURE_FAILURES,
            "Total number of deliveries with an invalid signature",
            ["queue"],
            registry=self._registry,
        )

        self.handler_duration = Histogram(
            METRIC_HANDLER_DURATION,
            "Task handler duration in seconds",
            ["queue", "action", "status"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self._registry,
        )

        self.retries_scheduled = Counter(
            METRIC_RETRIES_SCHEDULED,
            "Total number of retries written to the retry store",
            ["queue"],
            registry=self._registry,
        )

        self.retries_exhausted = Counter(
            METRIC_RETRIES_EXHAUSTED,
            "Total number of tasks that exceeded the retry limit",
            ["queue"],
            registry=self._registry,
        )

        self.retries_republished = Counter(
            METRIC_RETRIES_REPUBLISHED,
            "Total number of due retries republished to the broker",
            ["queue"],
            registry=self._registry,
        )

        self.retries_pending = Gauge(
            METRIC_RETRIES_PENDING,
            "Number of retries waiting in the retry store",
            ["queue"],
            registry=self._registry,
        )

    def record_published(self, queue: str) -> None:
        """Record a task publish."""
        self.tasks_published.labels(queue=queue).inc()

    def record_delivery(self, queue: str, outcome: str) -> None:
        """Record the terminal outcome of a delivery."""
        self.deliveries.labels(queue=queue, outcome=outcome).inc()

    def record_signature_failure(self, queue: str) -> None:
        """Record a delivery rejected for its signature."""
        self.signature_failures.labels(queue=queue).inc()

    def record_handler(
        self,
        queue: str,
        action: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a handler execution."""
        self.handler_duration.labels(queue=queue, action=action, status=status).observe(
            duration_seconds
        )

    def record_retry_scheduled(self, queue: str) -> None:
        """Record a retry written to the store."""
        self.retries_scheduled.labels(queue=queue).inc()

    def record_retry_exhausted(self, queue: str) -> None:
        """Record a task that ran out of retries."""
        self.retries_exhausted.labels(queue=queue).inc()

    def record_retries_republished(self, queue: str, count: int = 1) -> None:
        """Record due retries republished by the poller."""
        self.retries_republished.labels(queue=queue).inc(count)

    def update_retries_pending(self, queue: str, pending: int) -> None:
        """Update the pending retry gauge for a queue."""
        self.retries_pending.labels(queue=queue).set(pending)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given and non-zero, expose metrics over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
