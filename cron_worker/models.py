"""Run outcome types shared by the runner, the ledger and the API."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class RunStatus(str, Enum):
    """Outcome of one fire of a job."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    DEAD_LETTERED = "dead_lettered"
    LOCK_LOST = "lock_lost"
    CANCELLED = "cancelled"
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_OVERLAP = "skipped_overlap"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    MISSED = "missed"

    @property
    def is_terminal(self) -> bool:
        """True for outcomes where the job body actually ran."""
        return self in TERMINAL_STATUSES


# Outcomes where the body ran; once recorded they block the slot (CANCELLED does not)
TERMINAL_STATUSES = frozenset({
    RunStatus.SUCCEEDED,
    RunStatus.FAILED,
    RunStatus.TIMED_OUT,
    RunStatus.DEAD_LETTERED,
    RunStatus.LOCK_LOST,
})


@dataclass
class RunResult:
    """Result of ``JobRunner.run``."""

    job_name: str
    run_key: str
    status: RunStatus
    attempts: int = 0
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    output: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation (datetimes as ISO strings)."""
        output = self.output
        if output is not None and not isinstance(output, (str, int, float, bool, dict, list)):
            output = repr(output)

        return {
            "job_name": self.job_name,
            "run_key": self.run_key,
            "status": self.status.value,
            "attempts": self.attempts,
            "scheduled_at": _iso(self.scheduled_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "output": output,
            "metadata": dict(self.metadata),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
