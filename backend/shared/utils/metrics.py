"""
Prometheus metrics for the sync services.
Metric objects live at module level so every process registers them exactly once.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Provider ────────────────────────────────────────────────────────────
PROVIDER_REQUESTS = Counter(
    "ls_provider_requests_total",
    "Total provider HTTP requests",
    ["provider", "status"],
)
PROVIDER_LATENCY = Histogram(
    "ls_provider_latency_seconds",
    "Provider request latency in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Reconciler ──────────────────────────────────────────────────────────
RECONCILE_PASSES = Counter(
    "ls_reconcile_passes_total",
    "Reconciliation passes by result",
    ["sport", "result"],
)
FIXTURES_RECONCILED = Counter(
    "ls_fixtures_reconciled_total",
    "Fixtures applied to an internal match",
    ["sport", "binding"],
)
FIXTURES_SKIPPED = Counter(
    "ls_fixtures_skipped_total",
    "Fixtures skipped during reconciliation",
    ["sport", "reason"],
)
PREDICTIONS_SCORED = Counter(
    "ls_predictions_scored_total",
    "Predictions whose points were rewritten",
    ["sport"],
)
RECONCILE_DURATION = Histogram(
    "ls_reconcile_duration_seconds",
    "Wall time of one reconciliation pass",
    ["sport"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Kickoff worker ──────────────────────────────────────────────────────
MATCHES_FLIPPED = Counter(
    "ls_matches_flipped_total",
    "Matches flipped UPCOMING -> LIVE by the kickoff worker",
)
COMPETITIONS_PROMOTED = Counter(
    "ls_competitions_promoted_total",
    "Competitions promoted UPCOMING -> ACTIVE",
)
WORKER_SLEEP = Histogram(
    "ls_worker_sleep_seconds",
    "Computed sleep between kickoff worker iterations",
    buckets=(0.5, 1, 5, 15, 30, 60),
)
LEADER_STATE = Gauge(
    "ls_leader_state",
    "1 while this process holds the kickoff worker lock",
)

# ── Broadcaster ─────────────────────────────────────────────────────────
SIGNALS_BROADCAST = Counter(
    "ls_signals_broadcast_total",
    "Change signals fanned out to local subscribers",
    ["origin"],
)
SUBSCRIBERS_ACTIVE = Gauge(
    "ls_subscribers_active",
    "Currently registered change subscribers",
)
SUBSCRIBERS_EVICTED = Counter(
    "ls_subscribers_evicted_total",
    "Subscribers dropped from the registry",
    ["reason"],
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
