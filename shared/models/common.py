"""Common Pydantic models shared across services."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    """Health status enum."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


class ServiceInfo(BaseModel):
    """Liveness payload returned by ``/health``."""

    model_config = ConfigDict(use_enum_values=True)

    service_name: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    status: HealthStatus = Field(..., description="Service health status")
    uptime_seconds: float = Field(..., ge=0, description="Service uptime in seconds")
    instance_id: str = Field(..., description="Scheduler instance identifier")


class ReadinessReport(BaseModel):
    """Readiness payload returned by ``/ready``."""

    model_config = ConfigDict(use_enum_values=True)

    ready: bool
    service_name: str
    checks: Dict[str, HealthStatus] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
