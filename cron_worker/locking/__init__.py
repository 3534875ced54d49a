"""Singleton execution: lease-based lock backends."""

from pathlib import Path

from cron_worker.locking.leases import FileLockBackend, InMemoryLockBackend, Lease, LockBackend


async def create_lock_backend(config) -> LockBackend:
    """
    Build the lock backend selected by ``config.backend``.

    Args:
        config: LockConfig

    Returns:
        Ready-to-use LockBackend
    """
    backend = config.backend.lower()
    if backend == "memory":
        return InMemoryLockBackend()
    if backend == "file":
        return FileLockBackend(Path(config.directory))
    if backend == "postgres":
        # Imported lazily so asyncpg is only loaded when it is used
        from cron_worker.locking.postgres import PostgresAdvisoryLockBackend

        return await PostgresAdvisoryLockBackend.connect(
            config.dsn,
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
        )
    raise ValueError(f"Unknown lock backend: {config.backend!r}")


__all__ = [
    "FileLockBackend",
    "InMemoryLockBackend",
    "Lease",
    "LockBackend",
    "create_lock_backend",
]
