"""Prometheus metrics definitions and helpers.

Metric families for the cron worker: run outcomes, attempts, lock
contention, dead-lettered runs and schedule health.
"""

from typing import Callable, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)


class CronMetrics:
    """Cron worker metrics."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        """Initialize cron metrics.

        Args:
            registry: Prometheus registry to use
        """
        # Runs by terminal or skip status
        self.runs_total = Counter(
            "cron_job_runs_total",
            "Total number of job runs by outcome",
            ["job", "status"],
            registry=registry,
        )

        # Individual attempts (a run retries into several attempts)
        self.attempts_total = Counter(
            "cron_job_attempts_total",
            "Total number of job execution attempts",
            ["job"],
            registry=registry,
        )

        self.retries_total = Counter(
            "cron_job_retries_total",
            "Total number of retries after a failed attempt",
            ["job", "error_category"],
            registry=registry,
        )

        # Run duration (lease held to lease released)
        self.run_duration = Histogram(
            "cron_job_run_duration_seconds",
            "Wall-clock duration of job runs",
            ["job", "status"],
            buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0, 3600.0],
            registry=registry,
        )

        self.in_flight = Gauge(
            "cron_job_runs_in_flight",
            "Number of job runs currently executing in this instance",
            ["job"],
            registry=registry,
        )

        # Lease contention: another instance held the lock
        self.lock_contention = Counter(
            "cron_job_lock_contention_total",
            "Number of fires skipped because the lock was held elsewhere",
            ["job"],
            registry=registry,
        )

        self.dlq_events = Counter(
            "cron_dlq_events_total",
            "Number of runs routed to the dead letter queue",
            ["job", "reason"],
            registry=registry,
        )

        self.missed_fires = Counter(
            "cron_job_missed_fires_total",
            "Number of fires that started later than the misfire grace",
            ["job"],
            registry=registry,
        )

        # Alert on "now - last_success" in Prometheus
        self.last_success = Gauge(
            "cron_job_last_success_timestamp_seconds",
            "Unix timestamp of the last successful run",
            ["job"],
            registry=registry,
        )


def setup_metrics(registry: Optional[CollectorRegistry] = None) -> CronMetrics:
    """Create the metric families on the given (or default) registry."""
    return CronMetrics(registry or REGISTRY)


def start_metrics_server(port: int) -> None:
    """Expose the default registry on ``port`` in a background thread."""
    start_http_server(port)


def get_metrics_handler(registry: CollectorRegistry = REGISTRY) -> Callable[[], bytes]:
    """Get metrics handler for HTTP endpoint.

    Returns:
        Function that generates Prometheus metrics output
    """

    def metrics_handler() -> bytes:
        return generate_latest(registry)

    return metrics_handler


__all__ = [
    "CONTENT_TYPE_LATEST",
    "CronMetrics",
    "get_metrics_handler",
    "setup_metrics",
    "start_metrics_server",
]
