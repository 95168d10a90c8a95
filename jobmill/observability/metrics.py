"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from jobmill.constants import (
    METRIC_GLOBAL_LOCK_FAILURES,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_COMPLETED,
    METRIC_POOL_IDLE,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Claims per worker
    - Job completions and execution duration
    - Cluster lock failures
    - Idle execution slots
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self.registry = registry or REGISTRY

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by pollers",
            ["worker_id"],
            registry=self.registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs that reached a final state",
            ["status"],
            registry=self.registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 600.0),
            registry=self.registry,
        )

        self.global_lock_failures = Counter(
            METRIC_GLOBAL_LOCK_FAILURES,
            "Total number of poll cycles skipped because the cluster lock was busy",
            ["worker_id"],
            registry=self.registry,
        )

        self.pool_idle = Gauge(
            METRIC_POOL_IDLE,
            "Number of idle execution slots",
            ["worker_id"],
            registry=self.registry,
        )

    def record_jobs_claimed(self, worker_id: str, count: int = 1) -> None:
        """Record claimed jobs."""
        self.jobs_claimed.labels(worker_id=worker_id).inc(count)

    def record_job_completed(self, status: str, duration_seconds: float) -> None:
        """Record a job completion."""
        self.jobs_completed.labels(status=status).inc()
        self.job_duration.labels(status=status).observe(duration_seconds)

    def record_global_lock_failure(self, worker_id: str) -> None:
        self.global_lock_failures.labels(worker_id=worker_id).inc()

    def update_pool_idle(self, worker_id: str, idle: int) -> None:
        self.pool_idle.labels(worker_id=worker_id).set(idle)


def setup_metrics(port: int = 0) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: Serve the default registry over HTTP on this port (0 disables).

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
