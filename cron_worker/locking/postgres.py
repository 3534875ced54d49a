"""
PostgreSQL advisory-lock backend.

Advisory locks are held by a database session, so each lease keeps one
pooled connection checked out until it is released. If the worker dies
the session ends and PostgreSQL drops the lock; there is no TTL to
expire, ``ttl_seconds`` only sets the lease's nominal ``expires_at``.
"""

import hashlib
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

import asyncpg
import structlog

from cron_worker.locking.leases import Lease, LockBackend, utcnow
from cron_worker.utils.error_handler import RetryConfig, retry_with_backoff

logger = structlog.get_logger(__name__)

# The database may still be starting when the worker boots
CONNECT_RETRY = RetryConfig(max_attempts=5, initial_delay=1.0, max_delay=15.0)


def advisory_key(name: str) -> int:
    """Signed 64-bit advisory lock key derived from ``name``."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=True)


@retry_with_backoff(CONNECT_RETRY, retryable_exceptions=(OSError, asyncpg.CannotConnectNowError))
async def _create_pool(dsn: str, min_size: int, max_size: int) -> asyncpg.Pool:
    return await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)


class PostgresAdvisoryLockBackend(LockBackend):
    """Leases backed by ``pg_try_advisory_lock``."""

    def __init__(self, pool: asyncpg.Pool, clock: Callable[[], datetime] = utcnow):
        self.pool = pool
        self._clock = clock
        # lease_id -> (connection, lease)
        self._held: Dict[str, Tuple[asyncpg.Connection, Lease]] = {}

    @classmethod
    async def connect(cls, dsn: str, min_size: int = 1, max_size: int = 10) -> "PostgresAdvisoryLockBackend":
        """Create the backend with its own connection pool."""
        pool = await _create_pool(dsn, min_size, max_size)
        logger.info("advisory_lock_pool_created", min_size=min_size, max_size=max_size)
        return cls(pool)

    async def acquire(self, name: str, owner: str, ttl_seconds: float) -> Optional[Lease]:
        conn = await self.pool.acquire()
        try:
            locked = await conn.fetchval("SELECT pg_try_advisory_lock($1)", advisory_key(name))
        except Exception:
            await self.pool.release(conn)
            raise

        if not locked:
            await self.pool.release(conn)
            return None

        lease = Lease.new(name, owner, ttl_seconds, self._clock())
        self._held[lease.lease_id] = (conn, lease)
        logger.debug("advisory_lock_acquired", lock=name, owner=owner)
        return lease

    async def renew(self, lease: Lease, ttl_seconds: float) -> Optional[Lease]:
        held = self._held.get(lease.lease_id)
        if held is None:
            return None

        conn, _ = held
        try:
            # The session is the lock; if it answers, the lock is still ours
            await conn.fetchval("SELECT 1")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.error("advisory_lock_session_lost", lock=lease.name, error=str(exc))
            self._held.pop(lease.lease_id, None)
            await self._discard(conn)
            return None

        renewed = lease.extended(ttl_seconds, self._clock())
        self._held[lease.lease_id] = (conn, renewed)
        return renewed

    async def release(self, lease: Lease) -> bool:
        held = self._held.pop(lease.lease_id, None)
        if held is None:
            return False

        conn, _ = held
        try:
            unlocked = await conn.fetchval("SELECT pg_advisory_unlock($1)", advisory_key(lease.name))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.error("advisory_unlock_failed", lock=lease.name, error=str(exc))
            await self._discard(conn)
            return False

        await self.pool.release(conn)
        return bool(unlocked)

    async def holder(self, name: str) -> Optional[Lease]:
        for _, lease in self._held.values():
            if lease.name == name:
                return lease
        return None

    async def healthy(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.error("advisory_lock_health_check_failed", error=str(exc))
            return False
        return True

    async def close(self) -> None:
        for lease_id in list(self._held):
            _, lease = self._held[lease_id]
            await self.release(lease)
        await self.pool.close()

    async def _discard(self, conn: asyncpg.Connection) -> None:
        # Terminating drops any session-level locks with it
        try:
            await self.pool.release(conn)
        except (asyncpg.InterfaceError, OSError):
            conn.terminate()
