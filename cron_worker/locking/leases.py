"""
Lease-based locks for singleton job execution.

A lease is a time-bounded grant on a lock name. Holders renew it while
they work; a holder that dies simply stops renewing and the lease
expires, so a crashed instance can never block a job forever.
"""

import asyncio
import errno
import json
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

# An unreadable lock file younger than this may be a foreign writer mid-write
UNREADABLE_GRACE_SECONDS = 5.0

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Lease:
    """A granted lock."""

    name: str
    owner: str
    lease_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def extended(self, ttl_seconds: float, now: datetime) -> "Lease":
        return Lease(
            name=self.name,
            owner=self.owner,
            lease_id=self.lease_id,
            acquired_at=self.acquired_at,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "owner": self.owner,
            "lease_id": self.lease_id,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lease":
        return cls(
            name=data["name"],
            owner=data["owner"],
            lease_id=data["lease_id"],
            acquired_at=datetime.fromisoformat(data["acquired_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )

    @classmethod
    def new(cls, name: str, owner: str, ttl_seconds: float, now: datetime) -> "Lease":
        return cls(
            name=name,
            owner=owner,
            lease_id=uuid.uuid4().hex,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )


class LockBackend:
    """Abstract base for lock backends.

    Implementations guarantee at most one unexpired lease per name.
    ``renew`` and ``release`` only act on the lease identified by
    ``lease_id``; a stale holder cannot affect the current one.
    """

    async def acquire(self, name: str, owner: str, ttl_seconds: float) -> Optional[Lease]:
        """Return a new lease, or None when the name is held."""
        raise NotImplementedError

    async def renew(self, lease: Lease, ttl_seconds: float) -> Optional[Lease]:
        """Extend ``lease``; None when it has been lost."""
        raise NotImplementedError

    async def release(self, lease: Lease) -> bool:
        """Give up ``lease``; False when it was no longer held."""
        raise NotImplementedError

    async def holder(self, name: str) -> Optional[Lease]:
        """Current unexpired lease on ``name``, if known."""
        raise NotImplementedError

    async def healthy(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryLockBackend(LockBackend):
    """Process-local leases. Suitable for a single worker instance."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._leases: Dict[str, Lease] = {}
        self._mutex = asyncio.Lock()

    async def acquire(self, name: str, owner: str, ttl_seconds: float) -> Optional[Lease]:
        async with self._mutex:
            now = self._clock()
            current = self._leases.get(name)
            if current is not None and not current.is_expired(now):
                return None
            if current is not None:
                logger.warning("lease_taken_over", lock=name, previous_owner=current.owner, owner=owner)
            lease = Lease.new(name, owner, ttl_seconds, now)
            self._leases[name] = lease
            return lease

    async def renew(self, lease: Lease, ttl_seconds: float) -> Optional[Lease]:
        async with self._mutex:
            now = self._clock()
            current = self._leases.get(lease.name)
            if current is None or current.lease_id != lease.lease_id or current.is_expired(now):
                return None
            renewed = current.extended(ttl_seconds, now)
            self._leases[lease.name] = renewed
            return renewed

    async def release(self, lease: Lease) -> bool:
        async with self._mutex:
            current = self._leases.get(lease.name)
            if current is None or current.lease_id != lease.lease_id:
                return False
            del self._leases[lease.name]
            return True

    async def holder(self, name: str) -> Optional[Lease]:
        current = self._leases.get(name)
        if current is None or current.is_expired(self._clock()):
            return None
        return current


class FileLockBackend(LockBackend):
    """Leases stored as JSON files in a shared directory.

    A lease is written to a private temp file and published with
    ``os.link``, which fails if the lock file exists, so a lock file is
    never visible half-written and exactly one contender publishes it. A
    stale file is first renamed aside (atomic, only one renamer succeeds)
    and then published again the same way.
    """

    def __init__(self, directory: Path, clock: Clock = utcnow):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def _path(self, name: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in name)
        return self.directory / f"{safe}.lock"

    def _read(self, path: Path) -> Optional[Lease]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return Lease.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, ValueError, TypeError, AttributeError):
            return self._unreadable(path)

    def _unreadable(self, path: Path) -> Optional[Lease]:
        try:
            # mtime is wall-clock time, independent of the injected clock
            age = time.time() - os.stat(path).st_mtime
        except FileNotFoundError:
            return None

        now = self._clock()
        if age < UNREADABLE_GRACE_SECONDS:
            logger.debug("lock_file_unreadable_recent", path=str(path), age_seconds=round(age, 3))
            return Lease(
                name=path.stem,
                owner="unknown",
                lease_id="",
                acquired_at=now,
                expires_at=now + timedelta(seconds=UNREADABLE_GRACE_SECONDS - age),
            )

        logger.warning("lock_file_unreadable", path=str(path), age_seconds=round(age, 3))
        epoch = datetime.fromtimestamp(0, timezone.utc)
        return Lease(name=path.stem, owner="unknown", lease_id="", acquired_at=epoch, expires_at=epoch)

    def _write_temp(self, path: Path, lease: Lease) -> Path:
        tmp = path.with_name(f"{path.name}.{lease.lease_id}.{uuid.uuid4().hex[:8]}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(lease.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())
        return tmp

    def _create(self, path: Path, lease: Lease) -> bool:
        tmp = self._write_temp(path, lease)
        try:
            os.link(tmp, path)
        except FileExistsError:
            return False
        finally:
            os.unlink(tmp)
        return True

    def _replace(self, path: Path, lease: Lease) -> None:
        os.replace(self._write_temp(path, lease), path)

    def _acquire_sync(self, name: str, owner: str, ttl_seconds: float) -> Optional[Lease]:
        path = self._path(name)
        now = self._clock()
        lease = Lease.new(name, owner, ttl_seconds, now)

        if self._create(path, lease):
            return lease

        current = self._read(path)
        if current is not None and not current.is_expired(now):
            return None

        # Stale: move it out of the way; losing this race means someone else took over
        stale = path.with_name(f"{path.name}.stale-{lease.lease_id}")
        try:
            os.rename(path, stale)
        except FileNotFoundError:
            pass
        else:
            moved = self._read(stale)
            if moved is not None and not moved.is_expired(now):
                # A fresh lease was created between our read and the rename
                try:
                    os.link(stale, path)
                except FileExistsError:
                    pass
                os.unlink(stale)
                return None
            os.unlink(stale)
            if current is not None:
                logger.warning("lease_taken_over", lock=name, previous_owner=current.owner, owner=owner)

        return lease if self._create(path, lease) else None

    def _renew_sync(self, lease: Lease, ttl_seconds: float) -> Optional[Lease]:
        path = self._path(lease.name)
        now = self._clock()
        current = self._read(path)
        if current is None or current.lease_id != lease.lease_id or current.is_expired(now):
            return None
        renewed = current.extended(ttl_seconds, now)
        self._replace(path, renewed)
        return renewed

    def _release_sync(self, lease: Lease) -> bool:
        path = self._path(lease.name)
        current = self._read(path)
        if current is None or current.lease_id != lease.lease_id:
            return False
        try:
            os.unlink(path)
        except FileNotFoundError:
            return False
        return True

    async def acquire(self, name: str, owner: str, ttl_seconds: float) -> Optional[Lease]:
        return await asyncio.to_thread(self._acquire_sync, name, owner, ttl_seconds)

    async def renew(self, lease: Lease, ttl_seconds: float) -> Optional[Lease]:
        return await asyncio.to_thread(self._renew_sync, lease, ttl_seconds)

    async def release(self, lease: Lease) -> bool:
        return await asyncio.to_thread(self._release_sync, lease)

    async def holder(self, name: str) -> Optional[Lease]:
        current = await asyncio.to_thread(self._read, self._path(name))
        if current is None or current.is_expired(self._clock()):
            return None
        return current

    async def healthy(self) -> bool:
        return await asyncio.to_thread(self._writable)

    def _writable(self) -> bool:
        marker = self.directory / f".write-check-{uuid.uuid4().hex}"
        try:
            marker.write_text("ok", encoding="utf-8")
            marker.unlink()
        except OSError as exc:
            if exc.errno not in (errno.EACCES, errno.EROFS, errno.ENOSPC, errno.ENOENT):
                logger.error("lock_directory_check_failed", directory=str(self.directory), error=str(exc))
            return False
        return True
