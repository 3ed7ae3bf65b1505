"""
Match reconciler: merges provider snapshots into internal matches.

One pass per sport:

1. Bound matches (external_id set) are refreshed by id. A fetched fixture is
   trusted, only its kickoff date is checked against the id-bound slop.
2. Every started fixture in the date window that is not yet bound is matched by
   team names against unbound UPCOMING/LIVE matches of the same sport whose
   kickoff lies within the name-match slop. The unique best candidate above the
   threshold wins; ties are skipped.

Each match is written in its own transaction. Provider failures and failed
candidate reads abandon the rest of the pass; anything that goes wrong while
writing one fixture only skips that fixture.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from shared.config import Settings, get_settings
from shared.models.domain import ExternalSnapshot, ReconcileResult, ReconcileWindow, ensure_utc, utcnow
from shared.models.enums import DecidedBy, MatchStatus, SkipReason, Sport
from shared.models.orm import MatchORM
from shared.utils.database import DatabaseManager
from shared.utils.http_client import ProviderError
from shared.utils.logging import get_logger
from shared.utils.metrics import (
    FIXTURES_RECONCILED,
    FIXTURES_SKIPPED,
    PREDICTIONS_SCORED,
    RECONCILE_DURATION,
    RECONCILE_PASSES,
    atrack_latency,
)
from shared.utils.notifier import ChangeNotifier

from ingest.matching import fixture_similarity, select_candidate
from ingest.providers.base import BaseProvider
from ingest.providers.registry import ProviderRegistry
from ingest.status_map import clamp_elapsed, map_status
from scoring.engine import rescore_match
from scoring.rules import rule_set_for_sport

logger = get_logger(__name__)

T = TypeVar("T")

OPEN_STATUSES = (MatchStatus.UPCOMING.value, MatchStatus.LIVE.value)
# Bound matches are still refreshed after FINISHED so provider score corrections are picked up.
REFRESHABLE_STATUSES = (*OPEN_STATUSES, MatchStatus.FINISHED.value)


@dataclass
class ApplyOutcome:
    applied: bool
    changed: bool = False
    rescore: bool = False
    status_from: Optional[MatchStatus] = None
    status_to: Optional[MatchStatus] = None


def _fingerprint(match: MatchORM) -> tuple[Any, ...]:
    """Every stored field a reconciliation may touch, last_sync_at excluded."""
    return (
        match.external_id,
        match.external_status,
        match.status_detail,
        match.status,
        match.elapsed_minute,
        match.live_home_score,
        match.live_away_score,
        match.final_home_score,
        match.final_away_score,
        match.decided_by,
        match.finished_at,
    )


def apply_snapshot(match: MatchORM, snapshot: ExternalSnapshot, now: datetime) -> ApplyOutcome:
    """
    Merge one snapshot into one match in place.

    Status only moves forward. A terminal code without both scores holds the
    match at LIVE; final scores are written only together with FINISHED.
    """
    target = map_status(snapshot.sport, snapshot.status_code)
    if target is None:
        return ApplyOutcome(applied=False)

    current = MatchStatus(match.status)
    before = _fingerprint(match)
    score = snapshot.score

    if target == MatchStatus.FINISHED and score is None:
        logger.info("final_score_missing", match_id=str(match.id), code=snapshot.status_code)
        target = MatchStatus.LIVE

    if match.external_id is None:
        match.external_id = snapshot.external_id

    if not current.can_advance_to(target):
        # Stale snapshot: keep every stored field, scores included.
        logger.info(
            "status_regression_ignored",
            match_id=str(match.id),
            stored=current.value,
            observed=target.value,
            code=snapshot.status_code,
        )
        _touch_sync(match, now)
        return ApplyOutcome(
            applied=True,
            changed=_fingerprint(match) != before,
            status_from=current,
            status_to=current,
        )

    match.external_status = snapshot.status_code
    match.status_detail = snapshot.status_detail
    match.status = target.value

    if score is not None and target in (MatchStatus.LIVE, MatchStatus.FINISHED):
        match.live_home_score, match.live_away_score = score.home, score.away
    match.elapsed_minute = (
        clamp_elapsed(snapshot.sport, snapshot.elapsed_minute) if target == MatchStatus.LIVE else None
    )

    rescore = False
    if target == MatchStatus.FINISHED and score is not None:
        if (match.final_home_score, match.final_away_score) != (score.home, score.away):
            match.final_home_score, match.final_away_score = score.home, score.away
            rescore = True
        match.decided_by = (snapshot.decided_by or DecidedBy.REGULAR_TIME).value
        if match.finished_at is None:
            match.finished_at = now

    _touch_sync(match, now)
    return ApplyOutcome(
        applied=True,
        changed=_fingerprint(match) != before,
        rescore=rescore,
        status_from=current,
        status_to=target,
    )


def _touch_sync(match: MatchORM, now: datetime) -> None:
    """last_sync_at never moves backwards."""
    previous = ensure_utc(match.last_sync_at) if match.last_sync_at else None
    match.last_sync_at = max(previous, now) if previous else now


def _kickoff_delta(match: MatchORM, snapshot: ExternalSnapshot) -> timedelta:
    return abs(ensure_utc(match.kickoff_at) - snapshot.kickoff_at)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, dtime.min, tzinfo=timezone.utc)


class MatchReconciler:
    """Runs reconciliation passes. Holds no match state between passes."""

    def __init__(
        self,
        db: DatabaseManager,
        providers: ProviderRegistry,
        notifier: Optional[ChangeNotifier] = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._providers = providers
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def sports(self) -> list[Sport]:
        return self._providers.sports

    @property
    def max_window_days(self) -> int:
        return self._settings.reconcile_max_window_days

    def default_window(self) -> ReconcileWindow:
        today = self._clock().date()
        return ReconcileWindow(
            date_from=today - timedelta(days=self._settings.reconcile_window_back_days),
            date_to=today + timedelta(days=self._settings.reconcile_window_ahead_days),
        )

    async def reconcile(self, sport: Sport, window: ReconcileWindow | None = None) -> ReconcileResult:
        """One pass for one sport. Never raises for provider or per-fixture failures."""
        result = ReconcileResult(sport=sport)
        provider = self._providers.get(sport)
        if provider is None:
            logger.warning("reconcile_no_provider", sport=sport.value)
            result.aborted = True
            RECONCILE_PASSES.labels(sport=sport.value, result="no_provider").inc()
            return result

        window = window or self.default_window()
        claimed: set[uuid.UUID] = set()
        logger.info(
            "reconcile_pass_started",
            sport=sport.value,
            date_from=window.date_from.isoformat(),
            date_to=window.date_to.isoformat(),
        )

        async with atrack_latency(RECONCILE_DURATION, sport=sport.value):
            try:
                await self._reconcile_bound(provider, window, result, claimed)
                await self._reconcile_by_name(provider, window, result, claimed)
            except (ProviderError, asyncio.TimeoutError, SQLAlchemyError) as exc:
                result.aborted = True
                logger.warning(
                    "reconcile_pass_abandoned",
                    sport=sport.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    updated=result.updated_count,
                )

        RECONCILE_PASSES.labels(sport=sport.value, result="aborted" if result.aborted else "ok").inc()
        logger.info("reconcile_pass_finished", **result.model_dump(mode="json"))

        if result.changed_count and self._notifier is not None:
            await self._notifier.notify_change(reason=f"reconcile:{sport.value}")
        return result

    # ── provider calls ──────────────────────────────────────────────────

    async def _bounded(self, call: Awaitable[T], calls: int = 1) -> T:
        """Cap a provider call at the per-request timeout (times the request count)."""
        timeout = self._settings.provider_request_timeout_s * max(calls, 1) + 1.0
        return await asyncio.wait_for(call, timeout=timeout)

    # ── id-bound path ───────────────────────────────────────────────────

    async def _reconcile_bound(
        self,
        provider: BaseProvider,
        window: ReconcileWindow,
        result: ReconcileResult,
        claimed: set[uuid.UUID],
    ) -> None:
        sport = provider.sport
        slop = timedelta(days=self._settings.id_bound_date_slop_days)
        async with self._db.read_session() as session:
            rows = (
                await session.execute(
                    select(MatchORM.id, MatchORM.external_id).where(
                        MatchORM.sport == sport.value,
                        MatchORM.external_id.is_not(None),
                        MatchORM.status.in_(REFRESHABLE_STATUSES),
                        MatchORM.kickoff_at >= _day_start(window.date_from) - slop,
                        MatchORM.kickoff_at < _day_start(window.date_to + timedelta(days=1)),
                    )
                )
            ).all()

        for match_id, external_id in rows:
            snapshot = await self._bounded(provider.fetch_by_id(external_id))
            if snapshot is None:
                self._skip(result, sport, SkipReason.NOT_FOUND, match_id=str(match_id), external_id=external_id)
                continue
            claimed.add(match_id)
            await self._apply(match_id, snapshot, result, binding="id", slop=slop)

    # ── name-matching path ──────────────────────────────────────────────

    async def _reconcile_by_name(
        self,
        provider: BaseProvider,
        window: ReconcileWindow,
        result: ReconcileResult,
        claimed: set[uuid.UUID],
    ) -> None:
        sport = provider.sport
        snapshots = await self._bounded(provider.list_by_date_range(window), calls=len(window.days()))
        slop = timedelta(days=self._settings.name_match_date_slop_days)

        async with self._db.read_session() as session:
            bound_ids = set(
                (
                    await session.scalars(
                        select(MatchORM.external_id).where(
                            MatchORM.sport == sport.value,
                            MatchORM.external_id.is_not(None),
                        )
                    )
                ).all()
            )
            candidates = (
                await session.scalars(
                    select(MatchORM)
                    .options(selectinload(MatchORM.home_team), selectinload(MatchORM.away_team))
                    .where(
                        MatchORM.sport == sport.value,
                        MatchORM.external_id.is_(None),
                        MatchORM.status.in_(OPEN_STATUSES),
                        MatchORM.kickoff_at >= _day_start(window.date_from) - slop,
                        MatchORM.kickoff_at < _day_start(window.date_to + timedelta(days=1)) + slop,
                    )
                )
            ).all()

        for snapshot in snapshots:
            if snapshot.external_id in bound_ids:
                continue
            status = map_status(sport, snapshot.status_code)
            if status is None:
                self._skip(result, sport, SkipReason.UNKNOWN_STATUS, external_id=snapshot.external_id,
                           code=snapshot.status_code)
                continue
            if status == MatchStatus.UPCOMING:
                continue

            match_id = self._match_by_name(snapshot, candidates, slop, result)
            if match_id is None:
                continue
            if match_id in claimed:
                self._skip(result, sport, SkipReason.ALREADY_CLAIMED, match_id=str(match_id),
                           external_id=snapshot.external_id)
                continue
            claimed.add(match_id)
            await self._apply(match_id, snapshot, result, binding="name", slop=slop)

    def _match_by_name(
        self,
        snapshot: ExternalSnapshot,
        candidates: list[MatchORM],
        slop: timedelta,
        result: ReconcileResult,
    ) -> Optional[uuid.UUID]:
        threshold = self._settings.name_match_threshold
        in_slop: list[tuple[MatchORM, float]] = []
        out_of_slop_hit = False
        for match in candidates:
            score = fixture_similarity(
                snapshot.home_name,
                snapshot.away_name,
                [match.home_team.name, match.home_team.short_name or ""],
                [match.away_team.name, match.away_team.short_name or ""],
            )
            if _kickoff_delta(match, snapshot) <= slop:
                in_slop.append((match, score))
            elif score >= threshold:
                out_of_slop_hit = True

        selection = select_candidate(in_slop, threshold)
        if selection.accepted:
            return selection.candidate.id

        reason = selection.reason
        if reason in (SkipReason.NO_CANDIDATE, SkipReason.BELOW_THRESHOLD) and out_of_slop_hit:
            reason = SkipReason.DATE_SLOP
        self._skip(
            result,
            snapshot.sport,
            reason,
            external_id=snapshot.external_id,
            fixture=f"{snapshot.home_name} v {snapshot.away_name}",
            best_score=round(selection.score, 3),
        )
        return None

    # ── write path ──────────────────────────────────────────────────────

    async def _apply(
        self,
        match_id: uuid.UUID,
        snapshot: ExternalSnapshot,
        result: ReconcileResult,
        binding: str,
        slop: timedelta,
    ) -> None:
        sport = snapshot.sport
        now = self._clock()
        try:
            async with self._db.write_session() as session:
                match = await session.get(MatchORM, match_id, with_for_update=True)
                if match is None or MatchStatus(match.status) == MatchStatus.CANCELLED:
                    self._skip(result, sport, SkipReason.NOT_FOUND, match_id=str(match_id))
                    return
                if match.external_id not in (None, snapshot.external_id):
                    self._skip(result, sport, SkipReason.ALREADY_BOUND, match_id=str(match_id),
                               external_id=snapshot.external_id)
                    return
                if _kickoff_delta(match, snapshot) > slop:
                    self._skip(result, sport, SkipReason.DATE_SLOP, match_id=str(match_id),
                               external_id=snapshot.external_id)
                    return

                outcome = apply_snapshot(match, snapshot, now)
                if not outcome.applied:
                    self._skip(result, sport, SkipReason.UNKNOWN_STATUS, match_id=str(match_id),
                               code=snapshot.status_code)
                    return

                scored = 0
                if outcome.rescore:
                    scored = await rescore_match(session, match, rule_set_for_sport(sport, self._settings), now)
        except SQLAlchemyError as exc:
            logger.error(
                "reconcile_write_failed",
                match_id=str(match_id),
                external_id=snapshot.external_id,
                error=str(exc),
            )
            self._skip(result, sport, SkipReason.PERSISTENCE_ERROR)
            return

        result.updated_count += 1
        result.scored_count += scored
        if outcome.changed:
            result.changed_count += 1
        FIXTURES_RECONCILED.labels(sport=sport.value, binding=binding).inc()
        if scored:
            PREDICTIONS_SCORED.labels(sport=sport.value).inc(scored)
        if outcome.changed:
            logger.info(
                "match_reconciled",
                match_id=str(match_id),
                external_id=snapshot.external_id,
                binding=binding,
                status_from=outcome.status_from.value if outcome.status_from else None,
                status_to=outcome.status_to.value if outcome.status_to else None,
                code=snapshot.status_code,
                score=f"{snapshot.home_score}-{snapshot.away_score}",
                scored=scored,
            )

    def _skip(self, result: ReconcileResult, sport: Sport, reason: Optional[SkipReason], **fields: Any) -> None:
        reason = reason or SkipReason.NO_CANDIDATE
        result.skipped_count += 1
        FIXTURES_SKIPPED.labels(sport=sport.value, reason=reason.value).inc()
        if reason == SkipReason.NO_CANDIDATE:
            logger.debug("fixture_skipped", sport=sport.value, reason=reason.value, **fields)
        else:
            logger.warning("fixture_skipped", sport=sport.value, reason=reason.value, **fields)
