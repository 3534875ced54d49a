"""
Several worker instances sharing a lock directory and a run ledger file.

Each instance has its own ``FileLockBackend`` and ``RunLedger`` over the
same files, the way separate processes would.
"""

import asyncio
import sys

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from api.src.config import Settings
from api.src.main import create_app
from cron_worker.dlq.dlq_writer import DLQWriter
from cron_worker.executor.runner import JobRunner
from cron_worker.executor.targets import TargetExecutor
from cron_worker.locking.leases import FileLockBackend, utcnow
from cron_worker.models import RunStatus
from cron_worker.scheduler.engine import CronEngine
from cron_worker.scheduler.jobs import JobDefinition
from cron_worker.utils.checkpointing import FileRunLedgerStorage, RunLedger

pytestmark = pytest.mark.integration

FIRE_TIME = utcnow().replace(second=0, microsecond=0)


class SlowExecutor(TargetExecutor):
    def __init__(self, calls):
        self.calls = calls

    async def execute(self, context):
        self.calls.append(context.run_key)
        await asyncio.sleep(0.2)
        return "done"

    async def close(self):
        pass


def _job(**overrides):
    data = {
        "name": "invoice_sync",
        "schedule": "*/15 * * * *",
        "target": {"type": "http", "url": "https://billing.internal/sync"},
    }
    data.update(overrides)
    return JobDefinition(**data)


async def _instance(tmp_path, number, calls):
    ledger = RunLedger(FileRunLedgerStorage(tmp_path / "runs.json"))
    await ledger.initialize()
    return JobRunner(
        lock_backend=FileLockBackend(tmp_path / "locks"),
        ledger=ledger,
        dlq_writer=DLQWriter(fallback_file=tmp_path / "dlq.jsonl"),
        instance_id=f"worker-{number}",
        executor_factory=lambda target: SlowExecutor(calls),
    )


@pytest.mark.asyncio
async def test_slot_runs_once_across_instances(tmp_path):
    calls = []
    runners = [await _instance(tmp_path, n, calls) for n in range(3)]
    job = _job()

    results = await asyncio.gather(*(runner.run(job, scheduled_at=FIRE_TIME) for runner in runners))

    statuses = sorted(result.status.value for result in results)
    assert statuses == ["skipped_locked", "skipped_locked", "succeeded"]
    assert len(calls) == 1
    assert not list((tmp_path / "locks").glob("*.lock"))


@pytest.mark.asyncio
async def test_finished_slot_is_not_repeated(tmp_path):
    calls = []
    first = await _instance(tmp_path, 1, calls)
    late = await _instance(tmp_path, 2, calls)
    job = _job()

    assert (await first.run(job, scheduled_at=FIRE_TIME)).status == RunStatus.SUCCEEDED
    result = await late.run(job, scheduled_at=FIRE_TIME)

    assert result.status == RunStatus.SKIPPED_DUPLICATE
    assert len(calls) == 1
    assert late.ledger.get(result.run_key).status == RunStatus.SUCCEEDED.value


@pytest.mark.asyncio
async def test_failing_command_is_dead_lettered_and_listed(tmp_path):
    """A real subprocess fails, exhausts its retries and shows up on /dlq."""
    ledger = RunLedger(FileRunLedgerStorage(tmp_path / "runs.json"))
    await ledger.initialize()
    runner = JobRunner(
        lock_backend=FileLockBackend(tmp_path / "locks"),
        ledger=ledger,
        dlq_writer=DLQWriter(fallback_file=tmp_path / "dlq.jsonl"),
        instance_id="worker-1",
    )
    job = _job(
        name="nightly_report",
        schedule="0 2 * * *",
        target={"type": "shell", "command": [sys.executable, "-c", "import sys; sys.exit(3)"]},
        retry={"max_attempts": 2, "initial_delay": 0, "jitter": False, "retry_all_errors": True},
    )
    engine = CronEngine([job], runner)

    result = await engine.trigger_now("nightly_report", wait=True)

    assert result.status == RunStatus.DEAD_LETTERED
    assert result.attempts == 2
    assert ledger.last_run("nightly_report").status == RunStatus.DEAD_LETTERED.value

    client = TestClient(create_app(engine, settings=Settings(), registry=CollectorRegistry()))
    events = client.get("/dlq").json()["events"]
    assert [event["run_key"] for event in events] == [result.run_key]
    assert events[0]["reason"] == "max_retries_exceeded"
