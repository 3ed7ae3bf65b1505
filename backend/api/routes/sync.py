"""
Synchronization endpoints.

POST /v1/reconcile/{sport} : Run one reconciliation pass now.
POST /v1/notify            : Broadcast a refresh signal to every subscriber.
"""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError

from shared.models.domain import NotifyResult, ReconcileResult, ReconcileWindow
from shared.models.enums import Sport
from shared.utils.logging import get_logger

from api.dependencies import get_broadcaster, get_reconciler
from api.ws.broadcaster import ChangeBroadcaster
from ingest.reconciler import MatchReconciler

logger = get_logger(__name__)
router = APIRouter(prefix="/v1", tags=["sync"])


@router.post("/reconcile/{sport}", response_model=ReconcileResult)
async def reconcile_sport(
    sport: Sport,
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    reconciler: MatchReconciler = Depends(get_reconciler),
) -> ReconcileResult:
    """
    Reconcile one sport against its provider.

    Without dates the configured window around today is used. An explicit
    window longer than reconcile_max_window_days is rejected with 422. A pass
    that hits a provider failure still returns 200 with aborted=true.
    """
    if sport not in reconciler.sports:
        raise HTTPException(status_code=404, detail=f"No provider configured for {sport.value}")

    window = None
    if date_from or date_to:
        try:
            window = ReconcileWindow.bounded(
                date_from or date_to, date_to or date_from, reconciler.max_window_days
            )
        except ValidationError as exc:
            detail = exc.errors(include_url=False, include_context=False, include_input=False)
            raise HTTPException(status_code=422, detail=detail) from exc

    return await reconciler.reconcile(sport, window)


@router.post("/notify", response_model=NotifyResult)
async def notify(
    reason: str = Query(default="", max_length=200),
    broadcaster: ChangeBroadcaster = Depends(get_broadcaster),
) -> NotifyResult:
    """Emit one change signal. Used by the kickoff worker and cron reconciles."""
    return await broadcaster.notify_change(reason=reason)
