"""Dead letter queue for failed job runs."""

from .dlq_writer import DLQEvent, DLQReason, DLQWriter

__all__ = ["DLQEvent", "DLQReason", "DLQWriter"]
