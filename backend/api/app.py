"""
FastAPI application factory for the LiveSync API service.

Creates the app with:
- Sync routes (on-demand reconcile, change notify)
- Competition routes (missed predictions)
- WebSocket change stream
- Middleware stack
- Health check endpoints
- Lifespan management (startup/shutdown)
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional, Union

from fastapi import FastAPI, WebSocket

from shared.config import get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

from api.dependencies import get_broadcaster, get_db, init_dependencies
from api.middleware import setup_middleware
from api.routes.competitions import router as competitions_router
from api.routes.sync import router as sync_router
from api.ws.broadcaster import ChangeBroadcaster
from ingest.providers.registry import ProviderRegistry
from ingest.reconciler import MatchReconciler

logger = get_logger(__name__)

# Retry connection on startup (DB or Redis not ready yet)
_CONNECT_RETRY_ATTEMPTS = 10
_CONNECT_RETRY_BASE_DELAY_S = 2.0


async def _connect_with_retry(connect_fn, name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, _CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == _CONNECT_RETRY_ATTEMPTS:
                raise
            delay = _CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=_CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without DB/Redis."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Handles startup (connect to Postgres, start providers and the broadcaster)
    and shutdown (graceful cleanup).
    """
    settings = get_settings()
    setup_logging("api")
    start_metrics_server()

    db = DatabaseManager(settings)
    await _connect_with_retry(db.connect, "Database")

    redis: Optional[RedisManager] = None
    if settings.broadcast_redis_bridge:
        redis = RedisManager(settings)
        await _connect_with_retry(redis.connect, "Redis")

    broadcaster = ChangeBroadcaster(settings, redis)
    await broadcaster.start()

    providers = ProviderRegistry.from_settings(settings)
    await providers.start()
    reconciler = MatchReconciler(db, providers, broadcaster, settings)

    init_dependencies(db, broadcaster, reconciler)

    logger.info(
        "api_service_started",
        host=settings.api_host,
        port=settings.api_port,
        sports=[s.value for s in providers.sports],
        redis_bridge=redis is not None,
    )

    yield

    await broadcaster.stop()
    await providers.close()
    await db.disconnect()
    if redis is not None:
        await redis.disconnect()
    logger.info("api_service_stopped")


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False for testing without DB/Redis."""
    app = FastAPI(
        title="LiveSync API",
        description="Match synchronization and change notification",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Middleware
    setup_middleware(app)

    # REST routes
    app.include_router(sync_router)
    app.include_router(competitions_router)

    # Health check
    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    @app.get("/ready", tags=["system"])
    async def readiness() -> Dict[str, Union[str, bool]]:
        """Readiness probe: checks the database."""
        db_ok = await get_db().ping()
        return {"status": "ok" if db_ok else "degraded", "database": db_ok}

    # WebSocket endpoint
    @app.websocket("/v1/changes")
    async def changes_endpoint(ws: WebSocket) -> None:
        """
        Change stream.

        Server messages:
        - subscribed: sent once after the handshake
        - refresh: persisted match state changed, refetch
        - ping: keep-alive while idle
        """
        try:
            broadcaster = get_broadcaster()
        except RuntimeError:
            await ws.close(code=1013, reason="service_unavailable")
            return
        await broadcaster.handle_connection(ws)

    return app


# For running with uvicorn directly
app = create_app()
