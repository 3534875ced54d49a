"""
Run ledger for idempotent cron execution.

Every scheduled slot of a job has a run key. Once a slot has reached a
terminal outcome it is recorded here, and any later attempt to run the
same slot (another instance firing late, a restart replaying a fire) is
skipped. Storage writes are atomic so a crash never leaves a torn ledger.
"""

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from cron_worker.models import RunResult, RunStatus


logger = logging.getLogger(__name__)


def make_run_key(job_name: str, scheduled_at: Optional[datetime] = None) -> str:
    """Build the idempotency key for one slot of a job.

    Scheduled slots are keyed by their UTC fire time so every instance
    derives the same key. Manual runs get a unique key.
    """
    if scheduled_at is None:
        return f"{job_name}@manual-{uuid.uuid4().hex}"
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    stamp = scheduled_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"{job_name}@{stamp}"


@dataclass
class RunRecord:
    """Persisted outcome of one run"""
    run_key: str
    job_name: str
    status: str
    attempts: int
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    scheduled_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def blocks_rerun(self) -> bool:
        """True when the slot must not be executed again."""
        try:
            return RunStatus(self.status).is_terminal
        except ValueError:
            return False

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunRecord':
        """Create record from dictionary, ignoring unknown keys"""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_result(cls, result: RunResult) -> 'RunRecord':
        data = result.to_dict()
        return cls(
            run_key=result.run_key,
            job_name=result.job_name,
            status=result.status.value,
            attempts=result.attempts,
            started_at=data["started_at"],
            finished_at=data["finished_at"],
            scheduled_at=data["scheduled_at"],
            error=result.error,
        )


class RunLedgerStorage:
    """Abstract base for run ledger storage backends"""

    async def save(self, records: Dict[str, RunRecord]):
        """Save records"""
        raise NotImplementedError

    async def load(self) -> Dict[str, RunRecord]:
        """Load records"""
        raise NotImplementedError

    async def clear(self):
        """Clear all records"""
        raise NotImplementedError


class FileRunLedgerStorage(RunLedgerStorage):
    """File-based ledger storage with atomic writes"""

    def __init__(self, ledger_file: Path):
        self.ledger_file = Path(ledger_file)
        self.temp_file = self.ledger_file.with_name(self.ledger_file.name + ".tmp")

        self.ledger_file.parent.mkdir(parents=True, exist_ok=True)

    async def save(self, records: Dict[str, RunRecord]):
        """Save records atomically"""
        data = {key: record.to_dict() for key, record in records.items()}

        try:
            with open(self.temp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.replace(self.temp_file, self.ledger_file)

            logger.debug(
                f"Saved {len(records)} run records to {self.ledger_file}",
                extra={"record_count": len(records)}
            )

        except OSError as e:
            logger.error(f"Failed to save run ledger: {e}")
            raise

    async def load(self) -> Dict[str, RunRecord]:
        """Load records from file"""
        if not self.ledger_file.exists():
            logger.debug("No run ledger found, starting fresh")
            return {}

        try:
            with open(self.ledger_file, 'r', encoding='utf-8') as f:
                data = json.load(f)

            records = {
                key: RunRecord.from_dict(value)
                for key, value in data.items()
            }

            logger.debug(
                f"Loaded {len(records)} run records from {self.ledger_file}",
                extra={"record_count": len(records)}
            )

            return records

        except (json.JSONDecodeError, TypeError, AttributeError) as e:
            logger.error(f"Corrupted run ledger {self.ledger_file}: {e}, starting fresh")
            return {}
        except OSError as e:
            logger.error(f"Failed to load run ledger: {e}")
            return {}

    async def clear(self):
        """Clear ledger file"""
        if self.ledger_file.exists():
            self.ledger_file.unlink()
            logger.info("Cleared run ledger")


class InMemoryRunLedgerStorage(RunLedgerStorage):
    """In-memory ledger storage (single process, tests)"""

    def __init__(self):
        self._records: Dict[str, RunRecord] = {}

    async def save(self, records: Dict[str, RunRecord]):
        self._records = dict(records)
        logger.debug(f"Saved {len(records)} run records to memory")

    async def load(self) -> Dict[str, RunRecord]:
        return dict(self._records)

    async def clear(self):
        self._records.clear()


class RunLedger:
    """
    Tracks executed job slots for idempotency and run history.

    Records are persisted on every write: the ledger is what stops a
    second instance from repeating a slot, so it cannot lag behind.
    """

    def __init__(
        self,
        storage: RunLedgerStorage,
        max_records_per_job: int = 100
    ):
        self.storage = storage
        self.max_records_per_job = max_records_per_job

        self._records: Dict[str, RunRecord] = {}

        self.metrics = {
            "records_written": 0,
            "records_loaded": 0,
            "records_pruned": 0,
            "write_failures": 0,
            "last_write_timestamp": None
        }

    async def initialize(self):
        """Load existing records from storage"""
        self._records = await self.storage.load()
        self.metrics["records_loaded"] = len(self._records)

        logger.info(
            f"RunLedger initialized with {len(self._records)} records",
            extra={"record_count": len(self._records)}
        )

    async def refresh(self):
        """Reload from storage to pick up records written by other instances"""
        self._records = await self.storage.load()

    def is_recorded(self, run_key: str) -> bool:
        """True if the slot already reached a terminal outcome"""
        record = self._records.get(run_key)
        return record is not None and record.blocks_rerun

    def get(self, run_key: str) -> Optional[RunRecord]:
        return self._records.get(run_key)

    async def record(self, result: RunResult) -> RunRecord:
        """Persist the outcome of a run"""
        record = RunRecord.from_result(result)

        try:
            # Merge into the stored view so records written by other
            # instances since our last load are not overwritten
            self._records = await self.storage.load()
            self._records[record.run_key] = record
            self._prune_job(record.job_name)
            await self.storage.save(self._records)
        except Exception:
            self.metrics["write_failures"] += 1
            raise

        self.metrics["records_written"] += 1
        self.metrics["last_write_timestamp"] = datetime.now(timezone.utc).isoformat()

        logger.debug(
            f"Recorded run {record.run_key} as {record.status}",
            extra={"run_key": record.run_key, "status": record.status}
        )
        return record

    def history(self, job_name: str, limit: Optional[int] = None) -> List[RunRecord]:
        """Records of ``job_name``, newest first"""
        records = [r for r in self._records.values() if r.job_name == job_name]
        records.sort(key=lambda r: r.finished_at or r.started_at or "", reverse=True)
        return records[:limit] if limit is not None else records

    def last_run(self, job_name: str) -> Optional[RunRecord]:
        history = self.history(job_name, limit=1)
        return history[0] if history else None

    async def prune(self) -> int:
        """Trim every job to ``max_records_per_job`` and persist"""
        removed = 0
        for job_name in {r.job_name for r in self._records.values()}:
            removed += self._prune_job(job_name)
        if removed:
            await self.storage.save(self._records)
        return removed

    def _prune_job(self, job_name: str) -> int:
        history = self.history(job_name)
        stale = history[self.max_records_per_job:]
        for record in stale:
            del self._records[record.run_key]
        self.metrics["records_pruned"] += len(stale)
        return len(stale)

    async def shutdown(self):
        """Final flush of the ledger"""
        logger.info("Shutting down RunLedger...")
        await self.storage.save(self._records)
        logger.info(
            "RunLedger shutdown complete",
            extra={"record_count": len(self._records)}
        )

    def get_metrics(self) -> Dict[str, Any]:
        """Get ledger metrics"""
        return {
            **self.metrics,
            "current_record_count": len(self._records),
        }
