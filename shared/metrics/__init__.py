"""Metrics module using Prometheus."""

from .prometheus_metrics import (
    CONTENT_TYPE_LATEST,
    CronMetrics,
    get_metrics_handler,
    setup_metrics,
    start_metrics_server,
)

__all__ = [
    "CONTENT_TYPE_LATEST",
    "CronMetrics",
    "get_metrics_handler",
    "setup_metrics",
    "start_metrics_server",
]
