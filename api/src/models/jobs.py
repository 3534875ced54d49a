"""Response models for the job and DLQ endpoints."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LastRun(BaseModel):
    """Most recent outcome of a job as seen by this instance."""

    run_key: str
    status: str
    attempts: int = 0
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None


class JobSummary(BaseModel):
    """One row of ``GET /jobs``."""

    name: str
    schedule: str
    description: str = ""
    enabled: bool
    target: str = Field(..., description="Target type: callable, shell or http")
    next_run: Optional[datetime] = None
    in_flight: bool = False
    last_result: Optional[LastRun] = None


class RunRecordResponse(BaseModel):
    """Ledger entry, shared by every instance using the same ledger."""

    run_key: str
    status: str
    attempts: int
    scheduled_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None


class JobDetail(JobSummary):
    """``GET /jobs/{name}``."""

    timeout_seconds: float
    misfire_grace_seconds: float
    lock_name: str
    lock_ttl_seconds: float
    retry: Dict[str, Any]
    tags: List[str] = Field(default_factory=list)
    history: List[RunRecordResponse] = Field(default_factory=list)


class TriggerResponse(BaseModel):
    """Accepted manual run."""

    job: str
    run_key: str
    status: str = "accepted"


class DLQEventResponse(BaseModel):
    """A parked dead-letter event."""

    model_config = ConfigDict(extra="allow")

    job_name: str
    run_key: str
    reason: str
    error_message: str
    timestamp: str
    attempts: int = 0
    scheduled_at: Optional[str] = None
    target: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DLQListResponse(BaseModel):
    events: List[DLQEventResponse]
    count: int


class ErrorResponse(BaseModel):
    detail: Any
