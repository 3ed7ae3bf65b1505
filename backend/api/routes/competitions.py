"""
Competition REST endpoints.

GET /v1/competitions/{id}/missed-predictions : Started matches each participant never predicted.
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException

from shared.models.domain import MissedPredictions
from shared.models.orm import CompetitionORM
from shared.utils.database import DatabaseManager

from api.dependencies import get_db
from scoring.engine import missed_prediction_counts

router = APIRouter(prefix="/v1/competitions", tags=["competitions"])


@router.get("/{competition_id}/missed-predictions", response_model=MissedPredictions)
async def missed_predictions(
    competition_id: uuid.UUID,
    db: DatabaseManager = Depends(get_db),
) -> MissedPredictions:
    async with db.read_session() as session:
        if await session.get(CompetitionORM, competition_id) is None:
            raise HTTPException(status_code=404, detail="Competition not found")
        counts = await missed_prediction_counts(session, competition_id)
    return MissedPredictions(competition_id=competition_id, counts=counts)
