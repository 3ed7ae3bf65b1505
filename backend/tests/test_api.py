"""API route tests with lifespan disabled; dependencies are injected per test."""
from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.dependencies import init_dependencies
from api.ws.broadcaster import ChangeBroadcaster
from shared.models.domain import ReconcileResult, ReconcileWindow
from shared.models.enums import MatchStatus, Sport

NOW = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def reconciler() -> MagicMock:
    mock = MagicMock()
    mock.sports = [Sport.FOOTBALL]
    mock.max_window_days = 31
    mock.reconcile = AsyncMock(return_value=ReconcileResult(sport=Sport.FOOTBALL, updated_count=2, changed_count=1))
    return mock


@pytest.fixture
def client(settings, reconciler: MagicMock) -> TestClient:
    """Test client with lifespan disabled so routes can be tested without DB/Redis."""
    db = MagicMock()
    db.ping = AsyncMock(return_value=True)
    init_dependencies(db, ChangeBroadcaster(settings), reconciler)
    app = create_app(use_lifespan=False)
    with TestClient(app) as c:
        yield c


def test_health_returns_ok(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "api"}
    assert r.headers.get("x-request-id")


def test_ready_checks_database(client: TestClient) -> None:
    r = client.get("/ready")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "database": True}


# ── reconcile ───────────────────────────────────────────────────────────

def test_reconcile_with_window(client: TestClient, reconciler: MagicMock) -> None:
    r = client.post("/v1/reconcile/football", params={"date_from": "2026-10-16", "date_to": "2026-10-17"})

    assert r.status_code == 200
    body = r.json()
    assert body["sport"] == "football"
    assert body["updated_count"] == 2
    assert body["aborted"] is False
    reconciler.reconcile.assert_awaited_once_with(
        Sport.FOOTBALL, ReconcileWindow(date_from=date(2026, 10, 16), date_to=date(2026, 10, 17))
    )


def test_reconcile_default_window(client: TestClient, reconciler: MagicMock) -> None:
    assert client.post("/v1/reconcile/football").status_code == 200
    reconciler.reconcile.assert_awaited_once_with(Sport.FOOTBALL, None)


def test_reconcile_single_date_means_one_day(client: TestClient, reconciler: MagicMock) -> None:
    client.post("/v1/reconcile/football", params={"date_from": "2026-10-16"})
    window = reconciler.reconcile.await_args.args[1]
    assert window.date_from == window.date_to == date(2026, 10, 16)


def test_reconcile_rejects_bad_input(client: TestClient) -> None:
    assert client.post("/v1/reconcile/cricket").status_code == 422
    assert client.post("/v1/reconcile/rugby").status_code == 404
    r = client.post("/v1/reconcile/football", params={"date_from": "2026-10-18", "date_to": "2026-10-16"})
    assert r.status_code == 422


def test_reconcile_rejects_oversized_window(client: TestClient, reconciler: MagicMock) -> None:
    r = client.post("/v1/reconcile/football", params={"date_from": "2000-01-01", "date_to": "2030-01-01"})
    assert r.status_code == 422
    assert "31 days" in r.json()["detail"][0]["msg"]
    reconciler.reconcile.assert_not_awaited()

    r = client.post("/v1/reconcile/football", params={"date_from": "2026-10-01", "date_to": "2026-10-31"})
    assert r.status_code == 200


# ── notify and the change stream ────────────────────────────────────────

def test_notify_without_subscribers(client: TestClient) -> None:
    r = client.post("/v1/notify", params={"reason": "manual"})
    assert r.status_code == 200
    assert r.json()["subscriber_count"] == 0


def test_change_stream_receives_refresh(client: TestClient) -> None:
    with client.websocket_connect("/v1/changes") as ws:
        assert ws.receive_json()["type"] == "subscribed"

        r = client.post("/v1/notify", params={"reason": "manual"})
        assert r.json()["subscriber_count"] == 1

        signal = ws.receive_json()
        assert signal["type"] == "refresh"
        assert signal["signal_id"] == r.json()["signal_id"]
        assert signal["reason"] == "manual"


# ── competitions ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_missed_predictions_endpoint(db, settings, seed) -> None:
    comp = await seed.competition()
    match_id = await seed.match(comp, "Arsenal", "Chelsea", NOW - timedelta(hours=1), status=MatchStatus.LIVE)
    await seed.match(comp, "Everton", "Fulham", NOW + timedelta(days=1))
    keen, idle = await seed.participant(comp), await seed.participant(comp)
    await seed.prediction(match_id, keen, 1, 0)

    init_dependencies(db, ChangeBroadcaster(settings))
    app = create_app(use_lifespan=False)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        r = await ac.get(f"/v1/competitions/{comp}/missed-predictions")
        missing = await ac.get(f"/v1/competitions/{uuid.uuid4()}/missed-predictions")

    assert r.status_code == 200
    assert r.json() == {"competition_id": str(comp), "counts": {str(keen): 0, str(idle): 1}}
    assert missing.status_code == 404
