"""
Jobs router: schedule status, run history, manual triggers and the DLQ.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from api.src.config import Settings
from api.src.dependencies import (
    get_dlq_limit,
    get_dlq_writer,
    get_engine,
    get_job,
    get_ledger,
    get_settings_dependency,
)
from api.src.models.jobs import (
    DLQEventResponse,
    DLQListResponse,
    ErrorResponse,
    JobDetail,
    JobSummary,
    LastRun,
    RunRecordResponse,
    TriggerResponse,
)
from cron_worker.dlq.dlq_writer import DLQWriter
from cron_worker.scheduler.engine import CronEngine, JobAlreadyRunningError
from cron_worker.scheduler.jobs import JobDefinition
from cron_worker.utils.checkpointing import RunLedger

logger = structlog.get_logger(__name__)

jobs_router = APIRouter(
    prefix="/jobs",
    tags=["Jobs"],
    responses={404: {"model": ErrorResponse, "description": "Not Found"}}
)

dlq_router = APIRouter(prefix="/dlq", tags=["Dead Letter Queue"])


def _summary(engine: CronEngine, job: JobDefinition, next_runs: Dict[str, Optional[datetime]]) -> Dict:
    last = engine.last_results.get(job.name)
    return {
        "name": job.name,
        "schedule": job.schedule,
        "description": job.description,
        "enabled": job.enabled,
        "target": job.target.type,
        "next_run": next_runs.get(job.name),
        "in_flight": engine.is_in_flight(job.name),
        "last_result": LastRun(**last.to_dict()) if last is not None else None,
    }


@jobs_router.get("", response_model=List[JobSummary], summary="List jobs")
async def list_jobs(engine: CronEngine = Depends(get_engine)) -> List[JobSummary]:
    next_runs = engine.get_next_run_times()
    return [JobSummary(**_summary(engine, job, next_runs)) for job in engine.list_jobs()]


@jobs_router.get("/{name}", response_model=JobDetail, summary="Job detail and run history")
async def get_job_detail(
    job: JobDefinition = Depends(get_job),
    engine: CronEngine = Depends(get_engine),
    ledger: RunLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings_dependency),
) -> JobDetail:
    history = [
        RunRecordResponse(**record.to_dict())
        for record in ledger.history(job.name, limit=settings.history_limit)
    ]
    return JobDetail(
        **_summary(engine, job, engine.get_next_run_times()),
        timeout_seconds=job.timeout_seconds,
        misfire_grace_seconds=job.misfire_grace_seconds,
        lock_name=job.lock_name,
        lock_ttl_seconds=job.lock_ttl_seconds,
        retry=job.retry.model_dump(),
        tags=job.tags,
        history=history,
    )


@jobs_router.post(
    "/{name}/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a job now",
    responses={409: {"model": ErrorResponse, "description": "Already running"}}
)
async def trigger_job(
    job: JobDefinition = Depends(get_job),
    engine: CronEngine = Depends(get_engine),
) -> TriggerResponse:
    """
    Start a manual run outside the schedule.

    The run gets its own run key, so it never collides with a scheduled
    slot. The lease still applies: if another instance holds the job's
    lock the run ends as ``skipped_locked``.
    """
    try:
        run_key = await engine.trigger_now(job.name, wait=False)
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info("manual_trigger_accepted", job=job.name, run_key=run_key)
    return TriggerResponse(job=job.name, run_key=run_key)


@dlq_router.get("", response_model=DLQListResponse, summary="Parked dead-letter events")
async def list_dlq_events(
    limit: int = Depends(get_dlq_limit),
    dlq_writer: Optional[DLQWriter] = Depends(get_dlq_writer),
) -> DLQListResponse:
    if dlq_writer is None:
        return DLQListResponse(events=[], count=0)

    events = await asyncio.to_thread(dlq_writer.read_fallback, limit)
    items = [DLQEventResponse(**event.to_dict()) for event in events]
    return DLQListResponse(events=items, count=len(items))
