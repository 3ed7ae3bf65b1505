"""
Kickoff worker tests: bulk flip, competition promotion, wake-up computation
and the leader lifecycle.

Run: pytest backend/tests/test_kickoff_worker.py -v
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from scheduler.service import MIN_SLEEP_S, KickoffWorker
from shared.models.enums import CompetitionStatus, MatchStatus
from shared.utils.locks import LeaderLock, RedisLeaderLock

NOW = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)


class FakeLock(LeaderLock):
    def __init__(self, acquired: bool = True, held: tuple[bool, ...] = (True,)) -> None:
        super().__init__("kickoff-worker")
        self._acquired = acquired
        self._held = list(held)
        self.released = False

    async def acquire(self) -> bool:
        return self._acquired

    async def is_held(self) -> bool:
        # The last answer repeats once the script runs out.
        return self._held.pop(0) if len(self._held) > 1 else self._held[0]

    async def release(self) -> None:
        self.released = True


def make_worker(db, settings, lock: LeaderLock | None = None, notifier=None) -> KickoffWorker:
    worker = KickoffWorker(db, lock or FakeLock(), notifier, settings, clock=lambda: NOW)
    worker._sleep = AsyncMock()
    return worker


# ── flip_due_matches ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_flip_respects_grace_period(db, settings, seed) -> None:
    comp = await seed.competition()
    due = await seed.match(comp, "Arsenal", "Chelsea", NOW - timedelta(minutes=3))
    within_grace = await seed.match(comp, "Everton", "Fulham", NOW - timedelta(minutes=1))
    future = await seed.match(comp, "Leeds", "Wolves", NOW + timedelta(hours=1))
    worker = make_worker(db, settings)

    flipped = await worker.flip_due_matches(NOW)

    assert flipped == [due]
    assert (await seed.get_match(due)).status == MatchStatus.LIVE.value
    assert (await seed.get_match(within_grace)).status == MatchStatus.UPCOMING.value
    assert (await seed.get_match(future)).status == MatchStatus.UPCOMING.value


@pytest.mark.asyncio
async def test_flip_is_idempotent_and_leaves_other_states(db, settings, seed) -> None:
    comp = await seed.competition()
    due = await seed.match(comp, "Arsenal", "Chelsea", NOW - timedelta(hours=1))
    cancelled = await seed.match(
        comp, "Everton", "Fulham", NOW - timedelta(hours=1), status=MatchStatus.CANCELLED
    )
    worker = make_worker(db, settings)

    assert await worker.flip_due_matches(NOW) == [due]
    assert await worker.flip_due_matches(NOW) == []
    assert (await seed.get_match(cancelled)).status == MatchStatus.CANCELLED.value


# ── promote_competitions ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_promotes_only_competitions_with_started_matches(db, settings, seed) -> None:
    started = await seed.competition(name="Started")
    waiting = await seed.competition(name="Waiting")
    finished_only = await seed.competition(name="Finished")
    await seed.match(started, "Arsenal", "Chelsea", NOW - timedelta(hours=1), status=MatchStatus.LIVE)
    await seed.match(waiting, "Everton", "Fulham", NOW + timedelta(days=1))
    await seed.match(
        finished_only, "Leeds", "Wolves", NOW - timedelta(days=1), status=MatchStatus.FINISHED, final=(0, 0)
    )
    worker = make_worker(db, settings)

    promoted = await worker.promote_competitions()

    assert set(promoted) == {started, finished_only}
    assert (await seed.get_competition(started)).status == CompetitionStatus.ACTIVE.value
    assert (await seed.get_competition(waiting)).status == CompetitionStatus.UPCOMING.value
    assert await worker.promote_competitions() == []


# ── wake-up computation ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_next_flip_at_includes_grace(db, settings, seed) -> None:
    comp = await seed.competition()
    await seed.match(comp, "Arsenal", "Chelsea", NOW - timedelta(minutes=1))
    await seed.match(comp, "Everton", "Fulham", NOW + timedelta(hours=2))
    worker = make_worker(db, settings)

    assert await worker.next_flip_at(NOW) == NOW + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_next_flip_at_without_pending_kickoffs(db, settings) -> None:
    assert await make_worker(db, settings).next_flip_at(NOW) is None


def test_compute_sleep(settings) -> None:
    worker = KickoffWorker(None, FakeLock(), None, settings, clock=lambda: NOW)
    assert worker.compute_sleep(NOW, None) == settings.scheduler_safety_interval_s
    assert worker.compute_sleep(NOW, NOW + timedelta(seconds=20)) == 20
    assert worker.compute_sleep(NOW, NOW + timedelta(hours=1)) == settings.scheduler_safety_interval_s
    assert worker.compute_sleep(NOW, NOW - timedelta(seconds=5)) == MIN_SLEEP_S


@pytest.mark.asyncio
async def test_tick_notifies_only_when_something_changed(db, settings, seed) -> None:
    comp = await seed.competition()
    await seed.match(comp, "Arsenal", "Chelsea", NOW - timedelta(minutes=5))
    notifier = AsyncMock()
    worker = make_worker(db, settings, notifier=notifier)

    await worker.tick()
    await worker.tick()

    notifier.notify_change.assert_awaited_once_with(reason="kickoff")
    assert (await seed.get_competition(comp)).status == CompetitionStatus.ACTIVE.value


# ── leader lifecycle ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_non_leader_exits_cleanly_without_writes(db, settings, seed) -> None:
    comp = await seed.competition()
    due = await seed.match(comp, "Arsenal", "Chelsea", NOW - timedelta(hours=1))
    lock = FakeLock(acquired=False)

    assert await make_worker(db, settings, lock).run() == 0
    assert (await seed.get_match(due)).status == MatchStatus.UPCOMING.value
    assert not lock.released


@pytest.mark.asyncio
async def test_lock_loss_stops_the_loop(db, settings, seed) -> None:
    comp = await seed.competition()
    due = await seed.match(comp, "Arsenal", "Chelsea", NOW - timedelta(hours=1))
    lock = FakeLock(held=(True, False))
    worker = make_worker(db, settings, lock)

    assert await worker.run() == 0
    assert lock.released
    assert worker._sleep.await_count == 1
    assert (await seed.get_match(due)).status == MatchStatus.LIVE.value


@pytest.mark.asyncio
async def test_tick_failure_backs_off_and_keeps_running(db, settings) -> None:
    lock = FakeLock(held=(True, True, False))
    worker = make_worker(db, settings, lock)
    worker.tick = AsyncMock(side_effect=[RuntimeError("db down"), 12.0])

    assert await worker.run() == 0
    sleeps = [call.args[0] for call in worker._sleep.await_args_list]
    assert sleeps == [settings.scheduler_error_backoff_s, 12.0]
    assert lock.released


@pytest.mark.asyncio
async def test_shutdown_request_releases_lock(db, settings) -> None:
    lock = FakeLock()
    worker = make_worker(db, settings, lock)
    worker.request_shutdown()

    assert await worker.run() == 0
    assert lock.released


@pytest.mark.asyncio
async def test_failed_renewal_stops_before_writing(db, settings, seed) -> None:
    comp = await seed.competition()
    due = await seed.match(comp, "Arsenal", "Chelsea", NOW - timedelta(hours=1))
    lock = FakeLock()
    lock.renew = AsyncMock(return_value=False)
    worker = make_worker(db, settings, lock)

    assert await worker.run() == 0
    assert lock.released
    worker._sleep.assert_not_awaited()
    assert (await seed.get_match(due)).status == MatchStatus.UPCOMING.value


@pytest.mark.asyncio
async def test_redis_leader_keeps_its_key_without_revalidation(db, settings, fake_redis) -> None:
    settings = settings.model_copy(update={"scheduler_revalidate_lock": False})
    lock = RedisLeaderLock(fake_redis, "kickoff-worker", "pod-a", ttl_s=90)
    rival = RedisLeaderLock(fake_redis, "kickoff-worker", "pod-b", ttl_s=90)
    worker = make_worker(db, settings, lock)
    rival_won: list[bool] = []

    async def sleep(seconds: float) -> None:
        fake_redis.advance(seconds)
        rival_won.append(await rival.acquire())
        if len(rival_won) == 5:
            worker.request_shutdown()

    worker._sleep = sleep

    assert await worker.run() == 0
    assert rival_won == [False] * 5
    assert await fake_redis.leader_owner("kickoff-worker") is None
