"""
FastAPI dependency injection for the status API.

The engine and settings live on ``app.state``; ``create_app`` puts them
there so routes stay testable with any engine instance.
"""

from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Query, Request, status

from api.src.config import Settings
from cron_worker.dlq.dlq_writer import DLQWriter
from cron_worker.scheduler.engine import CronEngine
from cron_worker.scheduler.jobs import JobDefinition
from cron_worker.utils.checkpointing import RunLedger

logger = structlog.get_logger(__name__)


def get_engine(request: Request) -> CronEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler not initialized"
        )
    return engine


def get_settings_dependency(request: Request) -> Settings:
    return request.app.state.settings


def get_ledger(engine: CronEngine = Depends(get_engine)) -> RunLedger:
    return engine.runner.ledger


def get_dlq_writer(engine: CronEngine = Depends(get_engine)) -> Optional[DLQWriter]:
    return engine.runner.dlq_writer


def get_job(name: str, engine: CronEngine = Depends(get_engine)) -> JobDefinition:
    """Resolve the ``{name}`` path parameter to a job or 404."""
    job = engine.jobs.get(name)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job '{name}' not found"
        )
    return job


def get_dlq_limit(
    limit: int = Query(default=50, ge=1, description="Newest N events"),
    settings: Settings = Depends(get_settings_dependency),
) -> int:
    return min(limit, settings.dlq_max_limit)
