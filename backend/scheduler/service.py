"""
Kickoff worker.

Flips UPCOMING matches to LIVE once kickoff + grace has passed and promotes
competitions that now contain a started match. Exactly one instance writes:
the worker takes a named leader lock at boot and exits 0 if another instance
already holds it.

    Acquiring -> Running -> Releasing

Running wakes at the next flip instant, never later than the safety interval,
so late inserts and edited kickoff times are noticed.
"""
from __future__ import annotations

import asyncio
import signal
import sys
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import exists, func, select, update

from shared.config import LockBackend, Settings, get_settings
from shared.models.domain import ensure_utc, utcnow
from shared.models.enums import CompetitionStatus, MatchStatus
from shared.models.orm import CompetitionORM, MatchORM
from shared.utils.database import DatabaseManager
from shared.utils.locks import LeaderLock, build_leader_lock
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import (
    COMPETITIONS_PROMOTED,
    LEADER_STATE,
    MATCHES_FLIPPED,
    WORKER_SLEEP,
    start_metrics_server,
)
from shared.utils.notifier import ChangeNotifier, build_notifier
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)

# Lower bound on a sleep; a due kickoff is picked up on the next pass anyway.
MIN_SLEEP_S = 0.5
STARTED_STATUSES = tuple(s.value for s in MatchStatus if s.has_started)


class KickoffWorker:
    """Single-writer loop. Only run() touches the lock; tick() does one iteration of work."""

    def __init__(
        self,
        db: DatabaseManager,
        lock: LeaderLock,
        notifier: Optional[ChangeNotifier] = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._lock = lock
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._clock = clock
        self._grace = timedelta(seconds=self._settings.kickoff_grace_s)
        self._shutdown = asyncio.Event()

    def request_shutdown(self) -> None:
        logger.info("kickoff_worker_shutdown_requested")
        self._shutdown.set()

    # ── bulk operations ─────────────────────────────────────────────────

    async def flip_due_matches(self, now: datetime) -> list[uuid.UUID]:
        """UPCOMING -> LIVE for every match with kickoff <= now - grace. Idempotent."""
        cutoff = now - self._grace
        async with self._db.write_session() as session:
            result = await session.execute(
                update(MatchORM)
                .where(MatchORM.status == MatchStatus.UPCOMING.value, MatchORM.kickoff_at <= cutoff)
                .values(status=MatchStatus.LIVE.value)
                .returning(MatchORM.id)
                .execution_options(synchronize_session=False)
            )
            flipped = list(result.scalars())
        if flipped:
            MATCHES_FLIPPED.inc(len(flipped))
            logger.info("matches_flipped_live", count=len(flipped), match_ids=[str(m) for m in flipped])
        return flipped

    async def promote_competitions(self) -> list[uuid.UUID]:
        """UPCOMING -> ACTIVE for competitions with at least one LIVE or FINISHED match."""
        has_started = exists().where(
            MatchORM.competition_id == CompetitionORM.id,
            MatchORM.status.in_(STARTED_STATUSES),
        )
        async with self._db.write_session() as session:
            result = await session.execute(
                update(CompetitionORM)
                .where(CompetitionORM.status == CompetitionStatus.UPCOMING.value, has_started)
                .values(status=CompetitionStatus.ACTIVE.value)
                .returning(CompetitionORM.id)
                .execution_options(synchronize_session=False)
            )
            promoted = list(result.scalars())
        if promoted:
            COMPETITIONS_PROMOTED.inc(len(promoted))
            logger.info("competitions_promoted", count=len(promoted), competition_ids=[str(c) for c in promoted])
        return promoted

    async def next_flip_at(self, now: datetime) -> Optional[datetime]:
        """Earliest future flip instant (kickoff + grace) among UPCOMING matches."""
        async with self._db.read_session() as session:
            kickoff = await session.scalar(
                select(func.min(MatchORM.kickoff_at)).where(
                    MatchORM.status == MatchStatus.UPCOMING.value,
                    MatchORM.kickoff_at > now - self._grace,
                )
            )
        if kickoff is None:
            return None
        return ensure_utc(kickoff) + self._grace

    def compute_sleep(self, now: datetime, next_flip: Optional[datetime]) -> float:
        safety = self._settings.scheduler_safety_interval_s
        if next_flip is None:
            return safety
        delay = (next_flip - now).total_seconds()
        return max(min(delay, safety), MIN_SLEEP_S)

    # ── loop ────────────────────────────────────────────────────────────

    async def tick(self) -> float:
        """Flip, then promote, then work out how long to sleep."""
        flipped = await self.flip_due_matches(self._clock())
        promoted = await self.promote_competitions()
        if (flipped or promoted) and self._notifier is not None:
            await self._notifier.notify_change(reason="kickoff")

        now = self._clock()
        sleep_s = self.compute_sleep(now, await self.next_flip_at(now))
        WORKER_SLEEP.observe(sleep_s)
        return sleep_s

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> int:
        """Acquire, loop until shutdown or lock loss, release. Returns the exit code."""
        if not await self._lock.acquire():
            logger.info("leader_lock_unavailable", lock=self._lock.name)
            return 0

        LEADER_STATE.set(1)
        logger.info("kickoff_worker_running", lock=self._lock.name)
        try:
            while not self._shutdown.is_set():
                if not await self._lock.renew():
                    logger.warning("leader_lock_lost", lock=self._lock.name, stage="renew")
                    break
                if self._settings.scheduler_revalidate_lock and not await self._lock.is_held():
                    logger.warning("leader_lock_lost", lock=self._lock.name, stage="revalidate")
                    break
                try:
                    sleep_s = await self.tick()
                except Exception as exc:
                    logger.error("kickoff_tick_failed", error=str(exc), exc_info=True)
                    sleep_s = self._settings.scheduler_error_backoff_s
                await self._sleep(sleep_s)
        finally:
            await self._lock.release()
            LEADER_STATE.set(0)
            logger.info("kickoff_worker_stopped", lock=self._lock.name)
        return 0


async def main() -> int:
    """Kickoff worker entrypoint. Returns the process exit code."""
    settings = get_settings()
    setup_logging("scheduler")
    start_metrics_server()

    db = DatabaseManager(settings)
    redis: Optional[RedisManager] = None
    try:
        await db.connect()
        if settings.scheduler_lock_backend == LockBackend.REDIS:
            redis = RedisManager(settings)
            await redis.connect()

        worker = KickoffWorker(db, build_leader_lock(db, redis, settings), build_notifier(settings), settings)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, worker.request_shutdown)

        return await worker.run()
    except Exception as exc:
        logger.error("kickoff_worker_failed", error=str(exc), exc_info=True)
        return 0
    finally:
        await db.disconnect()
        if redis is not None:
            await redis.disconnect()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
