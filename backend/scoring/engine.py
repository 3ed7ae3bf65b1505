"""
Prediction scoring.

compute_points() is pure. rescore_match() applies it to every prediction of a
finished match and only writes rows whose points actually change, so a second
call with the same final score is a no-op.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.domain import ScorePair, utcnow
from shared.models.enums import MatchStatus
from shared.models.orm import CompetitionParticipantORM, MatchORM, PredictionORM
from shared.utils.logging import get_logger

from scoring.rules import ScoringRuleSet

logger = get_logger(__name__)

STARTED_STATUSES = tuple(s.value for s in MatchStatus if s.has_started)


class PredictionGrade(str, Enum):
    EXACT = "exact"
    OUTCOME = "outcome"
    MISS = "miss"


def grade_prediction(predicted: ScorePair, actual: ScorePair, rule_set: ScoringRuleSet) -> PredictionGrade:
    if rule_set.proximity_tolerance is not None:
        error = abs(predicted.home - actual.home) + abs(predicted.away - actual.away)
        if error <= rule_set.proximity_tolerance:
            return PredictionGrade.EXACT
    elif predicted == actual:
        return PredictionGrade.EXACT
    if predicted.outcome == actual.outcome:
        return PredictionGrade.OUTCOME
    return PredictionGrade.MISS


def compute_points(predicted: ScorePair, actual: ScorePair, rule_set: ScoringRuleSet) -> int:
    """Points earned by predicted against the actual final score."""
    grade = grade_prediction(predicted, actual, rule_set)
    if grade is PredictionGrade.EXACT:
        return rule_set.exact_points
    if grade is PredictionGrade.OUTCOME:
        return rule_set.outcome_points
    return rule_set.miss_points


def final_score(match: MatchORM) -> Optional[ScorePair]:
    if match.final_home_score is None or match.final_away_score is None:
        return None
    return ScorePair(home=match.final_home_score, away=match.final_away_score)


async def rescore_match(
    session: AsyncSession,
    match: MatchORM,
    rule_set: ScoringRuleSet,
    now: datetime | None = None,
) -> int:
    """
    Recompute points for every prediction on a finished match.

    Returns:
        Number of predictions whose stored points changed.
    """
    actual = final_score(match)
    if match.status != MatchStatus.FINISHED.value or actual is None:
        logger.warning("rescore_skipped_not_final", match_id=str(match.id), status=match.status)
        return 0

    now = now or utcnow()
    result = await session.execute(select(PredictionORM).where(PredictionORM.match_id == match.id))
    changed = 0
    for prediction in result.scalars():
        points = compute_points(
            ScorePair(home=prediction.predicted_home, away=prediction.predicted_away),
            actual,
            rule_set,
        )
        if prediction.points != points:
            prediction.points = points
            prediction.scored_at = now
            changed += 1
        elif prediction.scored_at is None:
            prediction.scored_at = now

    logger.info(
        "match_rescored",
        match_id=str(match.id),
        rule_set=rule_set.name,
        final=f"{actual.home}-{actual.away}",
        changed=changed,
    )
    return changed


async def missed_prediction_count(
    session: AsyncSession,
    competition_id: uuid.UUID,
    participant_id: uuid.UUID,
) -> int:
    """Started matches of the competition the participant never predicted."""
    started = (
        select(MatchORM.id)
        .where(MatchORM.competition_id == competition_id, MatchORM.status.in_(STARTED_STATUSES))
        .scalar_subquery()
    )
    total = await session.scalar(
        select(func.count(MatchORM.id)).where(
            MatchORM.competition_id == competition_id,
            MatchORM.status.in_(STARTED_STATUSES),
        )
    )
    predicted = await session.scalar(
        select(func.count(PredictionORM.id)).where(
            PredictionORM.participant_id == participant_id,
            PredictionORM.match_id.in_(started),
        )
    )
    return max((total or 0) - (predicted or 0), 0)


async def missed_prediction_counts(session: AsyncSession, competition_id: uuid.UUID) -> dict[str, int]:
    """missed_prediction_count for every participant of a competition, keyed by participant id."""
    total = await session.scalar(
        select(func.count(MatchORM.id)).where(
            MatchORM.competition_id == competition_id,
            MatchORM.status.in_(STARTED_STATUSES),
        )
    ) or 0

    participants = (
        await session.scalars(
            select(CompetitionParticipantORM.participant_id).where(
                CompetitionParticipantORM.competition_id == competition_id
            )
        )
    ).all()

    per_participant = await session.execute(
        select(PredictionORM.participant_id, func.count(PredictionORM.id))
        .join(MatchORM, MatchORM.id == PredictionORM.match_id)
        .where(MatchORM.competition_id == competition_id, MatchORM.status.in_(STARTED_STATUSES))
        .group_by(PredictionORM.participant_id)
    )
    predicted = {str(pid): count for pid, count in per_participant.all()}

    counts = {str(pid): total for pid in participants}
    for pid, count in predicted.items():
        counts[pid] = max(total - count, 0)
    return counts
