"""
Cron scheduler engine.

Every enabled job gets its own asyncio task that sleeps until the next
fire time of its ``CronTrigger`` and hands the slot to the runner. A job
whose previous run is still in flight in this process skips the new
fire instead of overlapping with itself; other instances are kept out
by the runner's lease.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

import structlog

from cron_worker.models import RunResult, RunStatus
from cron_worker.scheduler.jobs import JobDefinition
from cron_worker.scheduler.triggers import build_trigger, next_fire_times
from cron_worker.utils.checkpointing import make_run_key

if TYPE_CHECKING:
    from cron_worker.executor.runner import JobRunner

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobAlreadyRunningError(Exception):
    """A manual trigger hit a job whose previous run is still in flight."""


class CronEngine:
    """Drives job fires on a single asyncio loop.

    Args:
        jobs: Job definitions (disabled ones are listed but never fired)
        runner: Runs one slot of a job
        timezone: Timezone cron expressions are evaluated in
        shutdown_grace_seconds: How long ``stop`` waits for in-flight runs
        clock: Source of "now" (timezone-aware)
    """

    def __init__(
        self,
        jobs: Iterable[JobDefinition],
        runner: "JobRunner",
        timezone: str = "UTC",
        shutdown_grace_seconds: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.runner = runner
        self.timezone = timezone
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._clock = clock

        self.jobs: Dict[str, JobDefinition] = {job.name: job for job in jobs}
        self.last_results: Dict[str, RunResult] = {}

        self._loops: Dict[str, asyncio.Task] = {}
        self._runs: Dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start one schedule loop per enabled job."""
        if self._running:
            return
        self._stopping.clear()
        self._running = True
        for job in self.jobs.values():
            if job.enabled:
                self._start_loop(job)
        logger.info(
            "scheduler_started",
            jobs=len(self.jobs),
            enabled=len(self._loops),
            timezone=self.timezone,
        )

    def _start_loop(self, job: JobDefinition) -> None:
        self._loops[job.name] = asyncio.create_task(self._schedule_loop(job), name=f"cron:{job.name}")

    async def _schedule_loop(self, job: JobDefinition) -> None:
        trigger = build_trigger(job.schedule, self.timezone)
        previous: Optional[datetime] = None
        now = self._clock()

        while not self._stopping.is_set():
            fire_time = trigger.get_next_fire_time(previous, now)
            if fire_time is None:
                logger.info("job_schedule_exhausted", job=job.name)
                return

            delay = (fire_time - self._clock()).total_seconds()
            if delay > 0 and await self._wait(delay):
                return

            now = self._clock()
            lateness = (now - fire_time).total_seconds()
            previous = fire_time

            if lateness > job.misfire_grace_seconds:
                self._record_missed(job, fire_time, lateness)
                # Coalesce: continue from now instead of replaying every missed slot
                previous = None
                continue

            self._dispatch(job, fire_time)
            now = fire_time

    async def _wait(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; True if the engine is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _record_missed(self, job: JobDefinition, fire_time: datetime, lateness: float) -> None:
        run_key = make_run_key(job.name, fire_time)
        self.last_results[job.name] = RunResult(
            job_name=job.name,
            run_key=run_key,
            status=RunStatus.MISSED,
            scheduled_at=fire_time,
        )
        metrics = getattr(self.runner, "metrics", None)
        if metrics:
            metrics.missed_fires.labels(job=job.name).inc()
            metrics.runs_total.labels(job=job.name, status=RunStatus.MISSED.value).inc()
        logger.warning(
            "job_fire_missed",
            job=job.name,
            run_key=run_key,
            lateness_seconds=round(lateness, 3),
            misfire_grace_seconds=job.misfire_grace_seconds,
        )

    def _dispatch(self, job: JobDefinition, fire_time: datetime) -> Optional[asyncio.Task]:
        current = self._runs.get(job.name)
        if current is not None and not current.done():
            run_key = make_run_key(job.name, fire_time)
            self.last_results[job.name] = RunResult(
                job_name=job.name,
                run_key=run_key,
                status=RunStatus.SKIPPED_OVERLAP,
                scheduled_at=fire_time,
            )
            metrics = getattr(self.runner, "metrics", None)
            if metrics:
                metrics.runs_total.labels(job=job.name, status=RunStatus.SKIPPED_OVERLAP.value).inc()
            logger.warning("job_fire_skipped_overlap", job=job.name, run_key=run_key)
            return None

        return self._spawn(job, fire_time, make_run_key(job.name, fire_time))

    def _spawn(self, job: JobDefinition, scheduled_at: Optional[datetime], run_key: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_job(job, scheduled_at, run_key), name=f"run:{run_key}")
        self._runs[job.name] = task
        task.add_done_callback(lambda t, name=job.name: self._run_done(name, t))
        return task

    async def _run_job(self, job: JobDefinition, scheduled_at: Optional[datetime], run_key: str) -> RunResult:
        try:
            result = await self.runner.run(job, scheduled_at, run_key=run_key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("job_run_crashed", job=job.name, run_key=run_key, error=str(exc), exc_info=True)
            result = RunResult(
                job_name=job.name,
                run_key=run_key,
                status=RunStatus.FAILED,
                scheduled_at=scheduled_at,
                error=f"{type(exc).__name__}: {exc}",
            )
        self.last_results[job.name] = result
        return result

    def _run_done(self, name: str, task: asyncio.Task) -> None:
        if self._runs.get(name) is task:
            del self._runs[name]

    async def trigger_now(self, name: str, wait: bool = True) -> Any:
        """Run ``name`` immediately, outside its schedule.

        Returns:
            The ``RunResult`` when ``wait`` is true, otherwise the run key.

        Raises:
            KeyError: Unknown job.
            JobAlreadyRunningError: A run of the job is in flight here.
        """
        job = self.jobs.get(name)
        if job is None:
            raise KeyError(name)
        if self.is_in_flight(name):
            raise JobAlreadyRunningError(f"Job '{name}' is already running")

        run_key = make_run_key(name)
        logger.info("job_triggered_manually", job=name, run_key=run_key)
        task = self._spawn(job, None, run_key)
        if not wait:
            return run_key
        return await task

    def is_in_flight(self, name: str) -> bool:
        task = self._runs.get(name)
        return task is not None and not task.done()

    def in_flight(self) -> List[str]:
        return sorted(name for name, task in self._runs.items() if not task.done())

    async def add_job(self, job: JobDefinition) -> None:
        """Add or replace a job while the engine runs."""
        await self._cancel_loop(job.name)
        self.jobs[job.name] = job
        if self._running and job.enabled:
            self._start_loop(job)
        logger.info("job_added", job=job.name, schedule=job.schedule, enabled=job.enabled)

    async def remove_job(self, name: str) -> bool:
        """Stop scheduling ``name``; a run in flight is left to finish."""
        if name not in self.jobs:
            return False
        await self._cancel_loop(name)
        del self.jobs[name]
        logger.info("job_removed", job=name)
        return True

    async def _cancel_loop(self, name: str) -> None:
        loop_task = self._loops.pop(name, None)
        if loop_task is not None:
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)

    def list_jobs(self) -> List[JobDefinition]:
        return sorted(self.jobs.values(), key=lambda job: job.name)

    def get_next_run_times(self) -> Dict[str, Optional[datetime]]:
        """Next fire time of every enabled job (None for disabled jobs)."""
        now = self._clock()
        next_runs: Dict[str, Optional[datetime]] = {}
        for job in self.list_jobs():
            if not job.enabled:
                next_runs[job.name] = None
                continue
            upcoming = next_fire_times(job.schedule, count=1, start=now + timedelta(microseconds=1),
                                       timezone=self.timezone)
            next_runs[job.name] = upcoming[0] if upcoming else None
        return next_runs

    async def stop(self) -> None:
        """Stop scheduling and drain in-flight runs.

        Runs still going after ``shutdown_grace_seconds`` are cancelled.
        Calling ``stop`` twice is harmless.
        """
        if not self._running:
            return
        self._running = False
        self._stopping.set()

        loops = list(self._loops.values())
        self._loops.clear()
        for loop_task in loops:
            loop_task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)

        pending = [task for task in self._runs.values() if not task.done()]
        if pending:
            logger.info("scheduler_draining", in_flight=len(pending), grace_seconds=self.shutdown_grace_seconds)
            _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("scheduler_cancelled_runs", cancelled=len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)

        logger.info("scheduler_stopped")
