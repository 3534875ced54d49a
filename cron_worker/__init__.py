"""Cron worker: scheduled jobs with leases, retries, idempotency and a DLQ."""

__version__ = "0.1.0"
