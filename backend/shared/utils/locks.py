"""
Cross-process leader locks.

A LeaderLock is acquire-or-give-up: acquire() never waits. Both backends free the
lock when the holder dies, the advisory lock with its connection and the redis key
through its TTL. Holders call renew() once per loop iteration; is_held() is the
separate, optional ownership check.
"""
from __future__ import annotations

import abc
import hashlib
import uuid
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from shared.config import LockBackend, Settings, get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


def advisory_lock_key(name: str) -> int:
    """Return a deterministic signed 64-bit lock key from a lock name."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=True)


class LeaderLock(abc.ABC):
    """Named, mutually exclusive lock shared by every worker instance."""

    def __init__(self, name: str) -> None:
        self.name = name

    @abc.abstractmethod
    async def acquire(self) -> bool:
        """Try once. True when this process is now the holder."""

    @abc.abstractmethod
    async def is_held(self) -> bool:
        """Re-check ownership. False once the lock has been lost."""

    async def renew(self) -> bool:
        """Keep the lock alive for another interval. False once it has been lost."""
        return True

    @abc.abstractmethod
    async def release(self) -> None:
        """Best-effort release; must not raise."""


class PostgresAdvisoryLock(LeaderLock):
    """Session-level pg advisory lock pinned to one dedicated connection."""

    _ACQUIRE = text("SELECT pg_try_advisory_lock(:key)")
    _RELEASE = text("SELECT pg_advisory_unlock(:key)")
    # A bigint advisory key is split into classid (high half) and objid (low half).
    _HELD = text(
        "SELECT EXISTS ("
        " SELECT 1 FROM pg_locks"
        " WHERE locktype = 'advisory' AND granted AND objsubid = 1"
        " AND pid = pg_backend_pid()"
        " AND ((classid::bigint << 32) | objid::bigint) = :key"
        ")"
    )

    def __init__(self, engine: AsyncEngine, name: str) -> None:
        super().__init__(name)
        self._engine = engine
        self.key = advisory_lock_key(name)
        self._conn: Optional[AsyncConnection] = None

    async def acquire(self) -> bool:
        conn = await self._engine.connect()
        try:
            acquired = bool((await conn.execute(self._ACQUIRE, {"key": self.key})).scalar())
            # Session-level lock survives the commit; the commit only ends the implicit transaction.
            await conn.commit()
        except Exception:
            await conn.close()
            raise
        if not acquired:
            await conn.close()
            return False
        self._conn = conn
        logger.info("advisory_lock_acquired", lock=self.name, key=self.key)
        return True

    async def is_held(self) -> bool:
        if self._conn is None:
            return False
        try:
            held = bool((await self._conn.execute(self._HELD, {"key": self.key})).scalar())
            await self._conn.commit()
            return held
        except Exception as exc:
            logger.warning("advisory_lock_check_failed", lock=self.name, error=str(exc))
            return False

    async def renew(self) -> bool:
        # Nothing expires; the lock lives as long as the connection.
        return self._conn is not None

    async def release(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            await conn.execute(self._RELEASE, {"key": self.key})
            await conn.commit()
            logger.info("advisory_lock_released", lock=self.name)
        except Exception as exc:
            logger.warning("advisory_lock_release_failed", lock=self.name, error=str(exc))
        finally:
            try:
                await conn.close()
            except Exception as exc:
                logger.debug("advisory_lock_close_failed", lock=self.name, error=str(exc))


class RedisLeaderLock(LeaderLock):
    """SET NX EX leader key. The holder must renew() more often than the TTL."""

    def __init__(self, redis: RedisManager, name: str, owner: str, ttl_s: int) -> None:
        super().__init__(name)
        self._redis = redis
        self.owner = owner
        self._ttl_s = ttl_s
        self._held = False

    async def acquire(self) -> bool:
        self._held = await self._redis.try_acquire_leader(self.name, self.owner, self._ttl_s)
        if self._held:
            logger.info("redis_lock_acquired", lock=self.name, owner=self.owner)
        return self._held

    async def renew(self) -> bool:
        if not self._held:
            return False
        try:
            self._held = await self._redis.renew_leader(self.name, self.owner, self._ttl_s)
        except Exception as exc:
            logger.warning("redis_lock_renew_failed", lock=self.name, error=str(exc))
            self._held = False
        return self._held

    async def is_held(self) -> bool:
        if not self._held:
            return False
        try:
            self._held = await self._redis.leader_owner(self.name) == self.owner
        except Exception as exc:
            logger.warning("redis_lock_check_failed", lock=self.name, error=str(exc))
            self._held = False
        return self._held

    async def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            await self._redis.release_leader(self.name, self.owner)
            logger.info("redis_lock_released", lock=self.name, owner=self.owner)
        except Exception as exc:
            logger.warning("redis_lock_release_failed", lock=self.name, error=str(exc))


def build_leader_lock(
    db: DatabaseManager,
    redis: RedisManager | None = None,
    settings: Settings | None = None,
) -> LeaderLock:
    """Pick the lock backend named in settings."""
    settings = settings or get_settings()
    if settings.scheduler_lock_backend == LockBackend.REDIS:
        if redis is None:
            raise ValueError("redis lock backend selected but no RedisManager given")
        owner = settings.instance_id or uuid.uuid4().hex[:12]
        return RedisLeaderLock(redis, settings.scheduler_lock_name, owner, settings.scheduler_leader_ttl_s)
    return PostgresAdvisoryLock(db.engine, settings.scheduler_lock_name)
