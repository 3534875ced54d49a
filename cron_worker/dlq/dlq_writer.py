"""
Dead Letter Queue (DLQ) writer for failed job runs.

Runs that exhaust their retries, fail with a non-retryable error or lose
their lease are parked here for manual inspection and replay. Events go
to a Kafka topic when brokers are configured and to a JSON-lines file
otherwise, or whenever Kafka is unavailable.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from kafka import KafkaProducer


logger = logging.getLogger(__name__)


class DLQReason(str, Enum):
    """Reasons for routing a run to the DLQ"""
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    NON_RETRYABLE_ERROR = "non_retryable_error"
    TIMEOUT = "timeout"
    LOCK_LOST = "lock_lost"
    UNHANDLED_EXCEPTION = "unhandled_exception"


@dataclass
class DLQEvent:
    """Dead Letter Queue event structure"""
    job_name: str
    run_key: str
    reason: str
    error_message: str
    timestamp: str
    attempts: int = 0
    scheduled_at: Optional[str] = None
    target: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return asdict(self)

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DLQEvent':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class DLQWriter:
    """
    Dead Letter Queue writer for failed job runs.

    Sends events to a dedicated Kafka topic keyed by run key, with a local
    JSON-lines file as fallback so a broker outage never loses a failure.
    """

    def __init__(
        self,
        dlq_topic: str = "cron.dlq",
        bootstrap_servers: Optional[List[str]] = None,
        fallback_file: Optional[Path] = None,
        max_events_per_minute: int = 1000,
        send_timeout_seconds: float = 10.0
    ):
        self.dlq_topic = dlq_topic
        self.bootstrap_servers = list(bootstrap_servers or [])
        self.fallback_file = Path(fallback_file) if fallback_file else None
        self.send_timeout_seconds = send_timeout_seconds

        if not self.bootstrap_servers and self.fallback_file is None:
            raise ValueError("DLQWriter needs bootstrap_servers or a fallback_file")

        # Kafka producer (lazy initialization)
        self._producer: Optional[KafkaProducer] = None
        self._file_lock = asyncio.Lock()

        self.metrics = {
            "total_dlq_events": 0,
            "dlq_events_by_reason": {},
            "dlq_write_failures": 0,
            "fallback_writes": 0,
            "rate_limited": 0,
            "last_write_timestamp": None
        }

        self._rate_limiter = {
            "max_events_per_minute": max_events_per_minute,
            "current_count": 0,
            "window_start": datetime.now(timezone.utc)
        }

    @property
    def kafka_enabled(self) -> bool:
        return bool(self.bootstrap_servers)

    def _initialize_producer(self):
        """Initialize Kafka producer"""
        if self._producer is None:
            self._producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1
            )
            logger.info(
                f"DLQ producer initialized for topic {self.dlq_topic}",
                extra={"dlq_topic": self.dlq_topic}
            )

    async def write(
        self,
        job_name: str,
        run_key: str,
        reason: DLQReason,
        error_message: str,
        attempts: int = 0,
        scheduled_at: Optional[datetime] = None,
        target: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> DLQEvent:
        """
        Park a failed run in the DLQ.

        Args:
            job_name: Name of the failed job
            run_key: Idempotency key of the failed slot
            reason: Reason for DLQ routing
            error_message: Error message describing the failure
            attempts: Number of attempts made
            scheduled_at: Slot fire time (None for manual runs)
            target: Target definition, so the run can be replayed
            metadata: Additional metadata

        Returns:
            The event that was written

        Raises:
            OSError: If neither Kafka nor the fallback file accepted the event
        """
        dlq_event = DLQEvent(
            job_name=job_name,
            run_key=run_key,
            reason=reason.value if isinstance(reason, DLQReason) else str(reason),
            error_message=error_message,
            timestamp=datetime.now(timezone.utc).isoformat(),
            attempts=attempts,
            scheduled_at=scheduled_at.isoformat() if scheduled_at else None,
            target=target,
            metadata=metadata or {}
        )

        if not self._check_rate_limit():
            # Over the limit events still land in the file, never on the floor
            self.metrics["rate_limited"] += 1
            logger.warning(
                "DLQ rate limit exceeded, parking event in fallback file",
                extra={"job_name": job_name, "run_key": run_key}
            )
            await self._write_to_fallback(dlq_event)
            self._update_metrics(dlq_event.reason)
            return dlq_event

        if self.kafka_enabled:
            try:
                await self._send(dlq_event)
            except Exception as e:
                self.metrics["dlq_write_failures"] += 1
                logger.error(f"Failed to write to DLQ topic {self.dlq_topic}: {e}")
                if self.fallback_file is None:
                    raise
                await self._write_to_fallback(dlq_event)
        else:
            await self._write_to_fallback(dlq_event)

        self._update_metrics(dlq_event.reason)

        logger.warning(
            f"Run sent to DLQ: {dlq_event.reason}",
            extra={
                "dlq_topic": self.dlq_topic,
                "job_name": job_name,
                "run_key": run_key,
                "reason": dlq_event.reason,
                "attempts": attempts
            }
        )
        return dlq_event

    async def _send(self, dlq_event: DLQEvent):
        """Publish to Kafka and wait for the broker acknowledgement"""
        if self._producer is None:
            self._initialize_producer()

        future = self._producer.send(
            topic=self.dlq_topic,
            value=dlq_event.to_dict(),
            key=dlq_event.run_key
        )
        # kafka-python futures block; keep the event loop free
        await asyncio.to_thread(future.get, timeout=self.send_timeout_seconds)

    async def flush(self):
        """Flush pending DLQ events"""
        if self._producer:
            try:
                await asyncio.to_thread(self._producer.flush)
                logger.debug("DLQ producer flushed")
            except Exception as e:
                logger.error(f"Failed to flush DLQ producer: {e}")

    async def shutdown(self):
        """Shutdown DLQ writer"""
        logger.info("Shutting down DLQ writer...")

        if self._producer:
            try:
                await asyncio.to_thread(self._producer.flush)
                self._producer.close()
                logger.info("DLQ producer closed")
            except Exception as e:
                logger.error(f"Error shutting down DLQ producer: {e}")
            finally:
                self._producer = None

        logger.info(
            "DLQ writer shutdown complete",
            extra={
                "total_dlq_events": self.metrics["total_dlq_events"],
                "dlq_write_failures": self.metrics["dlq_write_failures"]
            }
        )

    def read_fallback(self, limit: Optional[int] = None) -> List[DLQEvent]:
        """
        Read events parked in the fallback file.

        Args:
            limit: Return only the newest ``limit`` events

        Returns:
            Events in write order (oldest first)
        """
        if self.fallback_file is None or not self.fallback_file.exists():
            return []

        events: List[DLQEvent] = []
        # Undecodable bytes become U+FFFD and fail JSON parsing below
        with open(self.fallback_file, 'r', encoding='utf-8', errors='replace') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                    if not isinstance(data, dict):
                        raise TypeError(f"expected a JSON object, got {type(data).__name__}")
                    events.append(DLQEvent.from_dict(data))
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(
                        f"Skipping corrupt DLQ line {line_number} in {self.fallback_file}: {e}"
                    )

        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def _check_rate_limit(self) -> bool:
        """Check if DLQ write is within rate limit"""
        now = datetime.now(timezone.utc)

        elapsed = (now - self._rate_limiter["window_start"]).total_seconds()
        if elapsed >= 60:
            self._rate_limiter["current_count"] = 0
            self._rate_limiter["window_start"] = now

        if self._rate_limiter["current_count"] >= self._rate_limiter["max_events_per_minute"]:
            return False

        self._rate_limiter["current_count"] += 1
        return True

    def _update_metrics(self, reason: str):
        """Update DLQ metrics"""
        self.metrics["total_dlq_events"] += 1
        self.metrics["last_write_timestamp"] = datetime.now(timezone.utc).isoformat()

        by_reason = self.metrics["dlq_events_by_reason"]
        by_reason[reason] = by_reason.get(reason, 0) + 1

    async def _write_to_fallback(self, dlq_event: DLQEvent):
        """Append to the fallback file"""
        if self.fallback_file is None:
            raise OSError("No DLQ fallback file configured")

        async with self._file_lock:
            self.fallback_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.fallback_file, 'a', encoding='utf-8') as f:
                f.write(dlq_event.to_json() + '\n')

        self.metrics["fallback_writes"] += 1

        logger.info(
            f"Event written to fallback file: {self.fallback_file}",
            extra={
                "fallback_file": str(self.fallback_file),
                "job_name": dlq_event.job_name,
                "run_key": dlq_event.run_key
            }
        )

    def get_metrics(self) -> Dict[str, Any]:
        """Get DLQ metrics"""
        return {**self.metrics, "dlq_events_by_reason": dict(self.metrics["dlq_events_by_reason"])}
