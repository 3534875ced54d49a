"""
Job run lifecycle.

One call to ``JobRunner.run`` covers one slot of one job: idempotency
check, lease, attempts with timeout and retry, dead-lettering and the
ledger entry. Everything a run does is visible in logs, metrics and a
``cron.run`` span.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog
from opentelemetry.trace import Status, StatusCode

from cron_worker.dlq.dlq_writer import DLQReason, DLQWriter
from cron_worker.executor.targets import JobContext, TargetExecutor, build_executor
from cron_worker.locking.leases import Lease, LockBackend, utcnow
from cron_worker.models import RunResult, RunStatus
from cron_worker.scheduler.jobs import JobDefinition, JobTarget
from cron_worker.utils.checkpointing import RunLedger, make_run_key
from cron_worker.utils.error_handler import ErrorCategory, calculate_delay, classify_error
from shared.logging import bound_context
from shared.metrics import CronMetrics
from shared.tracing import TracingMixin

logger = structlog.get_logger(__name__)


class LeaseLostError(Exception):
    """The lease on a running job could not be renewed."""


class LeaseKeeper:
    """Renews a lease in the background until stopped or lost."""

    def __init__(
        self,
        backend: LockBackend,
        lease: Lease,
        ttl_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.lease = lease
        self.ttl_seconds = ttl_seconds
        self.interval = max(ttl_seconds / 3.0, 0.01)
        self.lost = asyncio.Event()
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._renew_loop(), name=f"lease:{self.lease.name}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _renew_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                renewed = await self.backend.renew(self.lease, self.ttl_seconds)
            except Exception as exc:
                # A failed renew is only fatal once the lease has run out
                logger.error("lease_renew_failed", lock=self.lease.name, error=str(exc), exc_info=True)
                if not self.lease.is_expired(self._clock()):
                    continue
                renewed = None

            if renewed is None:
                logger.error("lease_lost", lock=self.lease.name, lease_id=self.lease.lease_id)
                self.lost.set()
                return
            self.lease = renewed


class JobRunner(TracingMixin):
    """Runs job slots under a lease with retries, timeouts and a DLQ.

    Args:
        lock_backend: Backend that grants the per-job lease
        ledger: Run ledger used for idempotency and history
        dlq_writer: Where exhausted runs are parked (None disables the DLQ)
        instance_id: Lease owner name of this worker
        metrics: Prometheus metric families, optional
        executor_factory: Builds the executor for a job target
        clock: Source of "now" for run timestamps
        sleep: Awaitable used for backoff delays
    """

    def __init__(
        self,
        lock_backend: LockBackend,
        ledger: RunLedger,
        dlq_writer: Optional[DLQWriter],
        instance_id: str,
        metrics: Optional[CronMetrics] = None,
        executor_factory: Callable[[JobTarget], TargetExecutor] = build_executor,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.lock_backend = lock_backend
        self.ledger = ledger
        self.dlq_writer = dlq_writer
        self.instance_id = instance_id
        self.metrics = metrics
        self.executor_factory = executor_factory
        self._clock = clock
        self._sleep = sleep

    async def run(
        self,
        job: JobDefinition,
        scheduled_at: Optional[datetime] = None,
        run_key: Optional[str] = None,
    ) -> RunResult:
        """Run one slot of ``job``.

        ``scheduled_at`` is the fire time of the slot; None means a manual
        run with its own unique run key.
        """
        run_key = run_key or make_run_key(job.name, scheduled_at)

        with bound_context(job=job.name, run_key=run_key):
            with self.tracer.start_as_current_span(
                "cron.run",
                attributes={
                    "cron.job": job.name,
                    "cron.run_key": run_key,
                    "cron.target": job.target.type,
                    "cron.instance": self.instance_id,
                },
            ) as span:
                result = await self._run(job, run_key, scheduled_at)
                span.set_attribute("cron.status", result.status.value)
                span.set_attribute("cron.attempts", result.attempts)
                if result.status == RunStatus.SUCCEEDED or not result.status.is_terminal:
                    span.set_status(Status(StatusCode.OK))
                else:
                    span.set_status(Status(StatusCode.ERROR, result.error or result.status.value))

        return result

    async def _run(self, job: JobDefinition, run_key: str, scheduled_at: Optional[datetime]) -> RunResult:
        if self.ledger.is_recorded(run_key):
            return self._skipped(job, run_key, scheduled_at, RunStatus.SKIPPED_DUPLICATE)

        lease = await self.lock_backend.acquire(job.lock_name, self.instance_id, job.lock_ttl_seconds)
        if lease is None:
            if self.metrics:
                self.metrics.lock_contention.labels(job=job.name).inc()
            return self._skipped(job, run_key, scheduled_at, RunStatus.SKIPPED_LOCKED)

        keeper = LeaseKeeper(self.lock_backend, lease, job.lock_ttl_seconds, clock=self._clock)
        try:
            # Another instance may have finished this slot just before we got the lease
            await self.ledger.refresh()
            if self.ledger.is_recorded(run_key):
                return self._skipped(job, run_key, scheduled_at, RunStatus.SKIPPED_DUPLICATE)

            keeper.start()
            return await self._execute(job, run_key, scheduled_at, keeper)
        finally:
            await keeper.stop()
            await self._release(keeper.lease)

    async def _execute(
        self,
        job: JobDefinition,
        run_key: str,
        scheduled_at: Optional[datetime],
        keeper: LeaseKeeper,
    ) -> RunResult:
        result = RunResult(
            job_name=job.name,
            run_key=run_key,
            status=RunStatus.FAILED,
            scheduled_at=scheduled_at,
            started_at=self._clock(),
        )
        if self.metrics:
            self.metrics.in_flight.labels(job=job.name).inc()

        logger.info("job_run_started", target=job.target.type, instance=self.instance_id)
        executor = self.executor_factory(job.target)
        try:
            dlq_reason = await self._attempts(job, executor, keeper, result)
            result.finished_at = self._clock()

            if dlq_reason is not None:
                await self._dead_letter(job, result, dlq_reason)

        except asyncio.CancelledError:
            result.status = RunStatus.CANCELLED
            result.finished_at = self._clock()
            result.error = result.error or "Run cancelled"
            logger.warning("job_run_cancelled", attempts=result.attempts)
            await self._record(result)
            self._observe(job, result)
            raise
        finally:
            await executor.close()
            if self.metrics:
                self.metrics.in_flight.labels(job=job.name).dec()

        await self._record(result)
        self._observe(job, result)

        log = logger.info if result.status == RunStatus.SUCCEEDED else logger.error
        log(
            "job_run_finished",
            status=result.status.value,
            attempts=result.attempts,
            duration_seconds=result.duration_seconds,
            error=result.error,
        )
        return result

    async def _attempts(
        self,
        job: JobDefinition,
        executor: TargetExecutor,
        keeper: LeaseKeeper,
        result: RunResult,
    ) -> Optional[DLQReason]:
        """Run attempts until success or give-up; return the DLQ reason on failure."""
        retry_config = job.retry.to_retry_config()

        while True:
            if keeper.lost.is_set():
                result.status = RunStatus.LOCK_LOST
                result.error = "Lease lost before the attempt started"
                return DLQReason.LOCK_LOST

            result.attempts += 1
            context = JobContext(
                job_name=job.name,
                run_key=result.run_key,
                attempt=result.attempts,
                scheduled_at=result.scheduled_at,
                lease=keeper.lease,
            )
            if self.metrics:
                self.metrics.attempts_total.labels(job=job.name).inc()

            try:
                result.output = await self._attempt(job, executor, context, keeper)
            except LeaseLostError:
                result.status = RunStatus.LOCK_LOST
                result.error = f"Lease on '{job.lock_name}' lost during attempt {result.attempts}"
                return DLQReason.LOCK_LOST
            except asyncio.TimeoutError as exc:
                timed_out = True
                error = exc
            except Exception as exc:
                timed_out = False
                error = exc
            else:
                result.status = RunStatus.SUCCEEDED
                result.error = None
                return None

            category = classify_error(error)
            retryable = job.retry.retry_all_errors or category != ErrorCategory.NON_RETRYABLE
            result.error = (
                f"Timed out after {job.timeout_seconds}s" if timed_out else f"{type(error).__name__}: {error}"
            )
            result.status = RunStatus.TIMED_OUT if timed_out else RunStatus.FAILED

            logger.warning(
                "job_attempt_failed",
                attempt=result.attempts,
                max_attempts=retry_config.max_attempts,
                error=result.error,
                error_category=category.value,
                retryable=retryable,
                exc_info=None if timed_out else error,
            )

            if not retryable:
                return DLQReason.NON_RETRYABLE_ERROR
            if result.attempts >= retry_config.max_attempts:
                return DLQReason.TIMEOUT if timed_out else DLQReason.MAX_RETRIES_EXCEEDED

            delay = calculate_delay(result.attempts - 1, retry_config)
            if self.metrics:
                self.metrics.retries_total.labels(job=job.name, error_category=category.value).inc()
            logger.info("job_retry_scheduled", attempt=result.attempts, delay_seconds=round(delay, 3))
            await self._sleep(delay)

    async def _attempt(
        self,
        job: JobDefinition,
        executor: TargetExecutor,
        context: JobContext,
        keeper: LeaseKeeper,
    ) -> Any:
        """One attempt, bounded by the job timeout and by the lease."""
        attempt_task = asyncio.ensure_future(asyncio.wait_for(executor.execute(context), job.timeout_seconds))
        lost_task = asyncio.ensure_future(keeper.lost.wait())

        try:
            done, _ = await asyncio.wait({attempt_task, lost_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            attempt_task.cancel()
            lost_task.cancel()
            await asyncio.gather(attempt_task, lost_task, return_exceptions=True)
            raise

        if attempt_task in done:
            lost_task.cancel()
            await asyncio.gather(lost_task, return_exceptions=True)
            return attempt_task.result()

        attempt_task.cancel()
        await asyncio.gather(attempt_task, return_exceptions=True)
        raise LeaseLostError(job.lock_name)

    async def _dead_letter(self, job: JobDefinition, result: RunResult, reason: DLQReason) -> None:
        if self.dlq_writer is None:
            logger.error("dlq_not_configured", reason=reason.value)
            return

        try:
            await self.dlq_writer.write(
                job_name=job.name,
                run_key=result.run_key,
                reason=reason,
                error_message=result.error or reason.value,
                attempts=result.attempts,
                scheduled_at=result.scheduled_at,
                target=job.target.model_dump(mode="json"),
                metadata={"instance_id": self.instance_id, "status": result.status.value},
            )
        except Exception as exc:
            # Status stays failed/timed_out so the ledger still tells the truth
            logger.error("dlq_write_failed", reason=reason.value, error=str(exc), exc_info=True)
            result.metadata["dlq_error"] = str(exc)
            return

        result.metadata["dlq_reason"] = reason.value
        if self.metrics:
            self.metrics.dlq_events.labels(job=job.name, reason=reason.value).inc()
        if result.status != RunStatus.LOCK_LOST:
            result.status = RunStatus.DEAD_LETTERED

    async def _record(self, result: RunResult) -> None:
        try:
            await self.ledger.record(result)
        except Exception as exc:
            logger.error("ledger_write_failed", status=result.status.value, error=str(exc), exc_info=True)
            result.metadata["ledger_error"] = str(exc)

    async def _release(self, lease: Lease) -> None:
        try:
            released = await self.lock_backend.release(lease)
        except Exception as exc:
            logger.error("lease_release_failed", lock=lease.name, error=str(exc), exc_info=True)
            return
        if not released:
            logger.warning("lease_already_gone", lock=lease.name, lease_id=lease.lease_id)

    def _skipped(
        self,
        job: JobDefinition,
        run_key: str,
        scheduled_at: Optional[datetime],
        status: RunStatus,
    ) -> RunResult:
        now = self._clock()
        result = RunResult(
            job_name=job.name,
            run_key=run_key,
            status=status,
            scheduled_at=scheduled_at,
            started_at=now,
            finished_at=now,
        )
        logger.info("job_run_skipped", status=status.value)
        self._observe(job, result)
        return result

    def _observe(self, job: JobDefinition, result: RunResult) -> None:
        if not self.metrics:
            return
        self.metrics.runs_total.labels(job=job.name, status=result.status.value).inc()
        if result.duration_seconds is not None and result.status.is_terminal:
            self.metrics.run_duration.labels(job=job.name, status=result.status.value).observe(
                result.duration_seconds
            )
        if result.status == RunStatus.SUCCEEDED and result.finished_at is not None:
            self.metrics.last_success.labels(job=job.name).set(result.finished_at.timestamp())
