"""Main entry point for the cron worker service."""

import asyncio
import contextlib
import signal
import sys
from pathlib import Path
from typing import Optional

import structlog
import uvicorn

from cron_worker.config import Config, get_config
from cron_worker.dlq.dlq_writer import DLQWriter
from cron_worker.executor.runner import JobRunner
from cron_worker.locking import create_lock_backend
from cron_worker.scheduler.engine import CronEngine
from cron_worker.scheduler.jobs import JobStore
from cron_worker.utils.checkpointing import FileRunLedgerStorage, InMemoryRunLedgerStorage, RunLedger
from shared.logging import configure_logging
from shared.metrics import CronMetrics, setup_metrics, start_metrics_server
from shared.tracing import configure_tracing

logger = structlog.get_logger(__name__)


class ApiServer(uvicorn.Server):
    """uvicorn server that leaves SIGTERM/SIGINT to the worker."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_ledger(config: Config) -> RunLedger:
    if config.ledger.path:
        storage = FileRunLedgerStorage(Path(config.ledger.path))
    else:
        storage = InMemoryRunLedgerStorage()
    return RunLedger(storage, max_records_per_job=config.ledger.max_records_per_job)


def build_dlq_writer(config: Config) -> DLQWriter:
    servers = [s.strip() for s in config.dlq.bootstrap_servers.split(",") if s.strip()]
    return DLQWriter(
        dlq_topic=config.dlq.topic,
        bootstrap_servers=servers or None,
        fallback_file=Path(config.dlq.fallback_file) if config.dlq.fallback_file else None,
        max_events_per_minute=config.dlq.max_events_per_minute,
    )


async def run_service(
    config: Config,
    metrics: Optional[CronMetrics] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run the scheduler until SIGTERM/SIGINT (or ``stop_event``).

    Args:
        config: Service configuration
        metrics: Metric families to record into
        stop_event: Set it to shut down; created when not given
    """
    stop_event = stop_event or asyncio.Event()

    jobs = JobStore(config.scheduler.jobs_file).load()
    lock_backend = await create_lock_backend(config.lock)
    ledger = build_ledger(config)
    await ledger.initialize()
    dlq_writer = build_dlq_writer(config)

    runner = JobRunner(
        lock_backend=lock_backend,
        ledger=ledger,
        dlq_writer=dlq_writer,
        instance_id=config.scheduler.instance_id,
        metrics=metrics,
    )
    engine = CronEngine(
        jobs.values(),
        runner,
        timezone=config.scheduler.timezone,
        shutdown_grace_seconds=config.scheduler.shutdown_grace_seconds,
    )

    loop = asyncio.get_running_loop()

    def request_stop(signum: int) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, request_stop, signum)

    server: Optional[ApiServer] = None
    server_task: Optional[asyncio.Task] = None

    try:
        await engine.start()

        if config.api_enabled:
            from api.src.main import create_app

            server = ApiServer(uvicorn.Config(
                create_app(engine),
                host=config.api_host,
                port=config.api_port,
                log_config=None,
                access_log=False,
                lifespan="off",
            ))
            server_task = asyncio.create_task(server.serve(), name="status-api")
            logger.info("status_api_started", host=config.api_host, port=config.api_port)

        logger.info(
            "cron_worker_started",
            instance_id=config.scheduler.instance_id,
            jobs=len(jobs),
            lock_backend=config.lock.backend,
        )
        await stop_event.wait()

    finally:
        logger.info("cron_worker_stopping")
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(signum)

        if server is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)

        await engine.stop()
        await dlq_writer.shutdown()
        await ledger.shutdown()
        await lock_backend.close()
        logger.info("cron_worker_stopped")


def main():
    """Main entry point."""
    config = get_config()

    configure_logging(
        log_level=config.log_level,
        json_logs=config.json_logs,
        service_name=config.service_name,
        instance_id=config.scheduler.instance_id,
    )

    logger.info(
        "cron_worker_starting",
        service_name=config.service_name,
        jobs_file=config.scheduler.jobs_file,
        lock_backend=config.lock.backend,
        dlq_topic=config.dlq.topic
    )

    try:
        if config.tracing_enabled:
            configure_tracing(
                service_name=config.service_name,
                otlp_endpoint=config.otlp_endpoint,
                sampling_rate=config.tracing_sampling_rate,
            )

        metrics = setup_metrics()
        if config.metrics_port:
            start_metrics_server(config.metrics_port)

        asyncio.run(run_service(config, metrics))

    except KeyboardInterrupt:
        logger.info("keyboard_interrupt_received")
    except Exception as e:
        logger.error("fatal_error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
