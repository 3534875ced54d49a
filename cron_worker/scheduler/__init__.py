"""Cron scheduling: expressions, job definitions and the engine."""

from cron_worker.scheduler.engine import CronEngine, JobAlreadyRunningError
from cron_worker.scheduler.jobs import (
    CallableTarget,
    HttpTarget,
    JobDefinition,
    JobStore,
    LockPolicy,
    RetryPolicy,
    ShellTarget,
)
from cron_worker.scheduler.triggers import build_trigger, next_fire_times, parse_cron_fields

__all__ = [
    "CallableTarget",
    "CronEngine",
    "HttpTarget",
    "JobAlreadyRunningError",
    "JobDefinition",
    "JobStore",
    "LockPolicy",
    "RetryPolicy",
    "ShellTarget",
    "build_trigger",
    "next_fire_times",
    "parse_cron_fields",
]
