"""FastAPI service exposing a cron worker's jobs, runs and DLQ.

``create_app`` is imported lazily by ``cron_worker.main`` when the API
is enabled.
"""

__version__ = "0.1.0"
