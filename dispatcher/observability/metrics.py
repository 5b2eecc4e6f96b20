"""
Prometheus metrics collection.
"""

import logging

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from dispatcher.constants import (
    METRIC_ACTIVE_JOBS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLEANED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_STALLED,
    METRIC_LEASE_ACQUIRED,
)

logger = logging.getLogger(__name__)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job dispatcher.

    Collects metrics for:
    - Job enqueues and outcomes per queue
    - Job execution duration
    - Lease acquisitions and in-flight jobs
    - Stalled-job reclamation
    - Retention cleanup
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue", "kind"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job attempts by outcome",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job handler duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["queue", "worker_id"],
            registry=self._registry,
        )

        self.jobs_stalled = Counter(
            METRIC_JOBS_STALLED,
            "Total number of stalled jobs detected",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.jobs_cleaned = Counter(
            METRIC_JOBS_CLEANED,
            "Total number of terminal jobs removed",
            ["queue", "state"],
            registry=self._registry,
        )

        self.active_jobs = Gauge(
            METRIC_ACTIVE_JOBS,
            "Jobs currently being processed by this process",
            ["queue"],
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str, kind: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(queue=queue, kind=kind).inc()

    def record_job_finished(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one attempt."""
        self.jobs_finished.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(
            duration_seconds
        )

    def record_lease_acquired(self, queue: str, worker_id: str) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(queue=queue, worker_id=worker_id).inc()

    def record_stalled(self, queue: str, outcome: str, count: int = 1) -> None:
        """Record stalled jobs, either reclaimed or failed."""
        if count:
            self.jobs_stalled.labels(queue=queue, outcome=outcome).inc(count)

    def record_cleaned(self, queue: str, state: str, count: int) -> None:
        """Record removed terminal jobs."""
        if count:
            self.jobs_cleaned.labels(queue=queue, state=state).inc(count)

    def set_active_jobs(self, queue: str, count: int) -> None:
        """Update the in-flight job gauge for a queue."""
        self.active_jobs.labels(queue=queue).set(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: Serve the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
        logger.info(f"Metrics exposed on port {port}")
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
