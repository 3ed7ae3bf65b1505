"""
One-shot reconciliation entrypoint for an external scheduler (cron, k8s CronJob).

    python -m ingest.service                      # every configured sport, default window
    python -m ingest.service football --date-from 2026-10-16 --date-to 2026-10-17

Always exits 0: a failed pass is retried by the next invocation.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import date
from typing import Optional, Sequence

from pydantic import ValidationError

from shared.config import get_settings
from shared.models.domain import ReconcileResult, ReconcileWindow
from shared.models.enums import Sport
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.notifier import build_notifier

from ingest.providers.registry import ProviderRegistry
from ingest.reconciler import MatchReconciler

logger = get_logger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one reconciliation pass per sport.")
    parser.add_argument("sports", nargs="*", type=Sport, help="sports to reconcile (default: all configured)")
    parser.add_argument("--date-from", type=date.fromisoformat, default=None)
    parser.add_argument("--date-to", type=date.fromisoformat, default=None)
    return parser.parse_args(argv)


async def run_once(
    reconciler: MatchReconciler,
    sports: Sequence[Sport],
    window: Optional[ReconcileWindow] = None,
) -> list[ReconcileResult]:
    results = []
    for sport in sports:
        results.append(await reconciler.reconcile(sport, window))
    return results


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Reconcile entrypoint. Returns the process exit code."""
    args = parse_args(argv)
    settings = get_settings()
    setup_logging("ingest")

    window = None
    if args.date_from or args.date_to:
        start = args.date_from or args.date_to
        try:
            window = ReconcileWindow.bounded(start, args.date_to or start, settings.reconcile_max_window_days)
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False, include_input=False)
            logger.error("ingest_invalid_window", errors=errors)
            return 0

    db = DatabaseManager(settings)
    registry = ProviderRegistry.from_settings(settings)
    try:
        await db.connect()
        await registry.start()
        reconciler = MatchReconciler(db, registry, build_notifier(settings), settings)
        sports = args.sports or reconciler.sports
        results = await run_once(reconciler, sports, window)
        logger.info(
            "ingest_run_finished",
            sports=[r.sport.value for r in results],
            updated=sum(r.updated_count for r in results),
            skipped=sum(r.skipped_count for r in results),
            aborted=[r.sport.value for r in results if r.aborted],
        )
    except Exception as exc:
        logger.error("ingest_run_failed", error=str(exc), exc_info=True)
    finally:
        await registry.close()
        await db.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
