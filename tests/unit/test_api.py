"""
Unit tests for the status and control API.

The app is built around a real, not started ``CronEngine`` whose runner
is a mock carrying an in-memory ledger and lock backend.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY, CollectorRegistry

from api.src.config import Settings
from api.src.main import create_app
from cron_worker.dlq.dlq_writer import DLQEvent, DLQWriter
from cron_worker.locking.leases import InMemoryLockBackend
from cron_worker.models import RunResult, RunStatus
from cron_worker.scheduler.engine import CronEngine, JobAlreadyRunningError
from cron_worker.scheduler.jobs import JobDefinition
from cron_worker.utils.checkpointing import InMemoryRunLedgerStorage, RunLedger
from shared.metrics import CronMetrics


def _job(name, **overrides):
    return JobDefinition(
        name=name,
        schedule="*/15 * * * *",
        target={"type": "http", "url": "https://billing.internal/sync"},
        **overrides,
    )


@pytest.fixture
def ledger():
    return RunLedger(InMemoryRunLedgerStorage())


@pytest.fixture
def dlq_writer(tmp_path):
    return DLQWriter(fallback_file=tmp_path / "dlq.jsonl")


@pytest.fixture
def runner(ledger, dlq_writer):
    runner = Mock()
    runner.instance_id = "worker-1"
    runner.ledger = ledger
    runner.dlq_writer = dlq_writer
    runner.lock_backend = InMemoryLockBackend()
    return runner


@pytest.fixture
def engine(runner):
    return CronEngine([_job("sync"), _job("archive", enabled=False, description="Old data")], runner)


@pytest.fixture
def registry():
    registry = CollectorRegistry()
    CronMetrics(registry=registry)
    return registry


@pytest.fixture
def settings():
    return Settings(history_limit=2, dlq_max_limit=3)


@pytest.fixture
def client(engine, settings, registry):
    return TestClient(create_app(engine, settings=settings, registry=registry))


class TestHealthEndpoints:
    """Test liveness, readiness and metrics"""

    def test_health(self, client):
        """Test liveness payload"""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["instance_id"] == "worker-1"
        assert data["uptime_seconds"] >= 0

    def test_not_ready_when_scheduler_stopped(self, client):
        """Test that a stopped scheduler fails readiness"""
        response = client.get("/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["ready"] is False
        assert data["checks"] == {"scheduler": "unhealthy", "lock_backend": "healthy"}

    def test_ready(self, settings, registry):
        """Test readiness with a running scheduler and healthy locks"""
        engine = Mock(running=True)
        engine.runner.lock_backend.healthy = AsyncMock(return_value=True)
        client = TestClient(create_app(engine, settings=settings, registry=registry))

        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json()["ready"] is True

    def test_lock_backend_error_not_ready(self, settings, registry):
        """Test that a failing lock backend check reports unhealthy"""
        engine = Mock(running=True)
        engine.runner.lock_backend.healthy = AsyncMock(side_effect=OSError("db down"))
        client = TestClient(create_app(engine, settings=settings, registry=registry))

        response = client.get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["lock_backend"] == "unhealthy"

    def test_no_engine(self, settings, registry):
        """Test an app without a scheduler"""
        client = TestClient(create_app(None, settings=settings, registry=registry))

        assert client.get("/health").json()["instance_id"] == "unknown"
        assert client.get("/ready").status_code == 503
        response = client.get("/jobs")
        assert response.status_code == 503
        assert response.json()["detail"] == "Scheduler not initialized"

    def test_metrics(self, client):
        """Test Prometheus exposition"""
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "cron_job_runs_total" in response.text

    def test_correlation_id_echoed(self, client):
        """Test that the correlation ID is returned"""
        response = client.get("/jobs", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"
        assert client.get("/jobs").headers["X-Correlation-ID"]

    def test_unmatched_paths_share_one_label(self, client):
        """Test that unknown paths are counted under a single endpoint label"""
        labels = {"method": "GET", "endpoint": "<unmatched>", "status": "404"}
        before = REGISTRY.get_sample_value("http_requests_total", labels) or 0
        path = f"/nope/{uuid.uuid4()}"

        assert client.get(path).status_code == 404
        assert client.get(path).status_code == 404

        assert REGISTRY.get_sample_value("http_requests_total", labels) == before + 2
        assert REGISTRY.get_sample_value(
            "http_requests_total", {"method": "GET", "endpoint": path, "status": "404"}
        ) is None
        assert REGISTRY.get_sample_value("http_requests_in_progress", {"method": "GET"}) == 0

    def test_routes_labelled_by_template(self, client):
        """Test that path parameters do not leak into the endpoint label"""
        labels = {"method": "GET", "endpoint": "/jobs/{name}", "status": "404"}
        before = REGISTRY.get_sample_value("http_requests_total", labels) or 0

        client.get("/jobs/missing")

        assert REGISTRY.get_sample_value("http_requests_total", labels) == before + 1


class TestJobsEndpoints:
    """Test job listing, detail and triggers"""

    def test_list_jobs(self, client, engine):
        """Test the job list, sorted by name"""
        engine.last_results["sync"] = RunResult(
            "sync", "sync@2024-01-01T00:15:00Z", RunStatus.SUCCEEDED, attempts=1,
            started_at=datetime(2024, 1, 1, 0, 15, tzinfo=timezone.utc),
            finished_at=datetime(2024, 1, 1, 0, 15, 2, tzinfo=timezone.utc),
        )

        response = client.get("/jobs")

        assert response.status_code == 200
        jobs = response.json()
        assert [job["name"] for job in jobs] == ["archive", "sync"]
        archive, sync = jobs
        assert archive["enabled"] is False
        assert archive["next_run"] is None
        assert archive["last_result"] is None
        assert sync["next_run"] is not None
        assert sync["target"] == "http"
        assert sync["last_result"]["status"] == "succeeded"
        assert sync["last_result"]["duration_seconds"] == 2.0

    def test_job_detail_with_history(self, client, ledger):
        """Test that history comes from the ledger, newest first and limited"""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for minutes in (15, 30, 45):
            at = start + timedelta(minutes=minutes)
            asyncio.run(ledger.record(RunResult(
                "sync", f"sync@{minutes}", RunStatus.SUCCEEDED, attempts=1, started_at=at, finished_at=at,
            )))

        response = client.get("/jobs/sync")

        assert response.status_code == 200
        data = response.json()
        assert [record["run_key"] for record in data["history"]] == ["sync@45", "sync@30"]
        assert data["lock_name"] == "sync"
        assert data["lock_ttl_seconds"] == 360.0
        assert data["retry"]["max_attempts"] == 3

    def test_unknown_job(self, client):
        """Test 404 for unknown jobs"""
        response = client.get("/jobs/missing")

        assert response.status_code == 404
        assert response.json()["detail"] == "Job 'missing' not found"

    def test_trigger(self, client, engine):
        """Test that a manual trigger is accepted"""
        engine.trigger_now = AsyncMock(return_value="sync@manual-abc")

        response = client.post("/jobs/sync/trigger")

        assert response.status_code == 202
        assert response.json() == {"job": "sync", "run_key": "sync@manual-abc", "status": "accepted"}
        engine.trigger_now.assert_awaited_once_with("sync", wait=False)

    def test_trigger_conflict(self, client, engine):
        """Test 409 while the job is running"""
        engine.trigger_now = AsyncMock(side_effect=JobAlreadyRunningError("Job 'sync' is already running"))

        response = client.post("/jobs/sync/trigger")

        assert response.status_code == 409
        assert "already running" in response.json()["detail"]

    def test_trigger_unknown_job(self, client):
        """Test 404 when triggering an unknown job"""
        assert client.post("/jobs/missing/trigger").status_code == 404


class TestDLQEndpoint:
    """Test dead-letter inspection"""

    def _park(self, dlq_writer, count):
        with open(dlq_writer.fallback_file, "a", encoding="utf-8") as f:
            for i in range(count):
                event = DLQEvent(
                    job_name="sync",
                    run_key=f"sync@{i}",
                    reason="max_retries_exceeded",
                    error_message="503",
                    timestamp="2024-01-01T00:00:00+00:00",
                    attempts=3,
                )
                f.write(event.to_json() + "\n")

    def test_empty(self, client):
        """Test an empty DLQ"""
        assert client.get("/dlq").json() == {"events": [], "count": 0}

    def test_newest_events(self, client, dlq_writer):
        """Test the limit parameter"""
        self._park(dlq_writer, 3)

        data = client.get("/dlq", params={"limit": 2}).json()

        assert data["count"] == 2
        assert [event["run_key"] for event in data["events"]] == ["sync@1", "sync@2"]

    def test_limit_capped(self, client, dlq_writer):
        """Test that limit is capped at dlq_max_limit"""
        self._park(dlq_writer, 5)

        assert client.get("/dlq", params={"limit": 100}).json()["count"] == 3

    def test_invalid_limit(self, client):
        """Test that limit must be positive"""
        assert client.get("/dlq", params={"limit": 0}).status_code == 422

    def test_dlq_disabled(self, settings, registry, runner):
        """Test a runner without a DLQ"""
        runner.dlq_writer = None
        client = TestClient(create_app(CronEngine([], runner), settings=settings, registry=registry))

        assert client.get("/dlq").json()["count"] == 0
