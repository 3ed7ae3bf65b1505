"""
Dependency injection for the API service.
Provides the database, reconciler and change broadcaster to route handlers.
"""
from __future__ import annotations

from shared.utils.database import DatabaseManager

from api.ws.broadcaster import ChangeBroadcaster
from ingest.reconciler import MatchReconciler

# Module-level singletons, initialized at startup
_db: DatabaseManager | None = None
_reconciler: MatchReconciler | None = None
_broadcaster: ChangeBroadcaster | None = None


def init_dependencies(
    db: DatabaseManager,
    broadcaster: ChangeBroadcaster,
    reconciler: MatchReconciler | None = None,
) -> None:
    """Initialize module-level singletons. Called once at startup."""
    global _db, _reconciler, _broadcaster
    _db = db
    _broadcaster = broadcaster
    _reconciler = reconciler


def get_db() -> DatabaseManager:
    """FastAPI dependency: returns the shared DatabaseManager."""
    if _db is None:
        raise RuntimeError("DatabaseManager not initialized, call init_dependencies first")
    return _db


def get_broadcaster() -> ChangeBroadcaster:
    if _broadcaster is None:
        raise RuntimeError("ChangeBroadcaster not initialized, call init_dependencies first")
    return _broadcaster


def get_reconciler() -> MatchReconciler:
    if _reconciler is None:
        raise RuntimeError("MatchReconciler not initialized, call init_dependencies first")
    return _reconciler
