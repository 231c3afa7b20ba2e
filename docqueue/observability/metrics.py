"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    start_http_server,
)

from docqueue.constants import (
    METRIC_HANDLER_DURATION,
    METRIC_MESSAGES_COMPLETED,
    METRIC_MESSAGES_DELETED,
    METRIC_MESSAGES_DEQUEUED,
    METRIC_MESSAGES_DUPLICATE,
    METRIC_MESSAGES_ENQUEUED,
    METRIC_MESSAGES_EXPIRED,
    METRIC_MESSAGES_FAILED,
    METRIC_MESSAGES_POISONED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queue.

    Collects metrics for:
    - Enqueues and rejected duplicates
    - Leases by dequeue mode
    - Completions, failures, deletions
    - Poisoned and expired messages
    - Handler duration in the worker
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self.registry = registry or REGISTRY

        self.messages_enqueued = Counter(
            METRIC_MESSAGES_ENQUEUED,
            "Total number of messages enqueued",
            registry=self.registry,
        )

        self.messages_duplicate = Counter(
            METRIC_MESSAGES_DUPLICATE,
            "Total number of enqueues rejected as duplicates",
            registry=self.registry,
        )

        # Leases by dequeue mode (single, batch, stream)
        self.messages_dequeued = Counter(
            METRIC_MESSAGES_DEQUEUED,
            "Total number of messages leased",
            ["mode"],
            registry=self.registry,
        )

        self.messages_completed = Counter(
            METRIC_MESSAGES_COMPLETED,
            "Total number of messages marked completed",
            registry=self.registry,
        )

        self.messages_failed = Counter(
            METRIC_MESSAGES_FAILED,
            "Total number of messages returned to the queue",
            registry=self.registry,
        )

        self.messages_deleted = Counter(
            METRIC_MESSAGES_DELETED,
            "Total number of messages deleted",
            registry=self.registry,
        )

        self.messages_poisoned = Counter(
            METRIC_MESSAGES_POISONED,
            "Total number of messages that exhausted their deliveries",
            registry=self.registry,
        )

        self.messages_expired = Counter(
            METRIC_MESSAGES_EXPIRED,
            "Total number of completed messages removed by expiry",
            registry=self.registry,
        )

        self.handler_duration = Histogram(
            METRIC_HANDLER_DURATION,
            "Message handler duration in seconds",
            ["status"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )

    def record_enqueued(self) -> None:
        """Record an accepted enqueue."""
        self.messages_enqueued.inc()

    def record_duplicate(self) -> None:
        """Record an enqueue rejected as a duplicate."""
        self.messages_duplicate.inc()

    def record_dequeued(self, mode: str, count: int = 1) -> None:
        """Record leased messages."""
        self.messages_dequeued.labels(mode=mode).inc(count)

    def record_completed(self, count: int = 1) -> None:
        self.messages_completed.inc(count)

    def record_failed(self, count: int = 1) -> None:
        self.messages_failed.inc(count)

    def record_deleted(self, count: int = 1) -> None:
        self.messages_deleted.inc(count)

    def record_poisoned(self, count: int = 1) -> None:
        self.messages_poisoned.inc(count)

    def record_expired(self, count: int) -> None:
        """Record messages removed by the expiry reaper."""
        self.messages_expired.inc(count)

    def record_handler(self, status: str, duration_seconds: float) -> None:
        """Record one handler invocation."""
        self.handler_duration.labels(status=status).observe(duration_seconds)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics


def serve_metrics(port: int) -> MetricsCollector:
    """
    Expose the metrics collector over HTTP for Prometheus to scrape.

    Args:
        port: Port for the ``/metrics`` endpoint.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    collector = setup_metrics()
    start_http_server(port, registry=collector.registry)
    return collector
