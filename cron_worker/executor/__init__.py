"""Job execution: target executors and the run lifecycle."""

from cron_worker.executor.runner import JobRunner, LeaseKeeper, LeaseLostError
from cron_worker.executor.targets import (
    CallableExecutor,
    HttpExecutor,
    JobContext,
    JobExecutionError,
    ShellExecutor,
    TargetExecutor,
    build_executor,
)

__all__ = [
    "CallableExecutor",
    "HttpExecutor",
    "JobContext",
    "JobExecutionError",
    "JobRunner",
    "LeaseKeeper",
    "LeaseLostError",
    "ShellExecutor",
    "TargetExecutor",
    "build_executor",
]
