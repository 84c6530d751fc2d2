"""Single-flight locks keyed by job key.

`InProcessJobLock` serialises runs inside one process. Replicas that share a
database can switch to `PostgresAdvisoryJobLock` (JOB_LOCK_BACKEND=postgres);
callers only see `try_acquire` / `release`.
"""

from __future__ import annotations

import asyncio
import hashlib
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import text

from app.core.config import settings
from app.core.logger import get_logger

log = get_logger("services.job_locks")


class JobLock(ABC):
    @abstractmethod
    async def try_acquire(self, key: str) -> bool: ...

    @abstractmethod
    async def release(self, key: str) -> None: ...

    @abstractmethod
    def is_locked(self, key: str) -> bool: ...


class InProcessJobLock(JobLock):
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def try_acquire(self, key: str) -> bool:
        lock = self._get_lock(key)
        if lock.locked():
            return False
        # Uncontended: acquire() returns without yielding.
        await lock.acquire()
        return True

    async def release(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            lock.release()

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


def advisory_key(name: str) -> int:
    digest = hashlib.blake2b(f"fixture-sync:{name}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


class PostgresAdvisoryJobLock(JobLock):
    """Session-level advisory lock held on a dedicated connection for the job's duration."""

    def __init__(self, engine=None):
        self._engine = engine
        self._local = InProcessJobLock()
        self._conns: dict[str, object] = {}

    def _get_engine(self):
        if self._engine is None:
            from app.core.db import engine

            self._engine = engine
        return self._engine

    async def try_acquire(self, key: str) -> bool:
        if not await self._local.try_acquire(key):
            return False
        conn = None
        try:
            conn = await self._get_engine().connect()
            row = (await conn.execute(text("SELECT pg_try_advisory_lock(:k) AS ok"), {"k": advisory_key(key)})).first()
            acquired = bool(row.ok) if row else False
        except Exception:
            log.exception("advisory_lock_failed key=%s", key)
            if conn is not None:
                await conn.close()
            await self._local.release(key)
            raise
        if not acquired:
            await conn.close()
            await self._local.release(key)
            return False
        self._conns[key] = conn
        return True

    async def release(self, key: str) -> None:
        conn = self._conns.pop(key, None)
        try:
            if conn is not None:
                try:
                    await conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": advisory_key(key)})
                except Exception as e:
                    # Closing the connection drops the session lock anyway.
                    log.warning("advisory_unlock_failed key=%s error=%s", key, e)
                finally:
                    await conn.close()
        finally:
            await self._local.release(key)

    def is_locked(self, key: str) -> bool:
        return self._local.is_locked(key)


_default_lock: Optional[JobLock] = None


def get_job_lock() -> JobLock:
    global _default_lock
    if _default_lock is None:
        backend = (settings.job_lock_backend or "memory").strip().lower()
        _default_lock = PostgresAdvisoryJobLock() if backend == "postgres" else InProcessJobLock()
        log.info("job_lock_backend backend=%s", type(_default_lock).__name__)
    return _default_lock
