"""
API-Sports connectors: football (v3, /fixtures) and rugby (v1, /games).

Both feeds authenticate with the x-apisports-key header and wrap results in
{"response": [...], "errors": ...}.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from shared.config import Settings, get_settings
from shared.models.domain import ExternalSnapshot
from shared.models.enums import Sport
from shared.utils.http_client import ProviderHTTPClient

from ingest.providers.base import BaseProvider
from ingest.status_map import decided_by


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _parse_kickoff(raw: Any) -> datetime:
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class ApiSportsFootballProvider(BaseProvider):
    """
    Football fixtures.

    Scores come from "goals". After extra time ("AET") or a shootout ("PEN")
    the extra-time line is preferred when the provider sends one; shootout
    goals are never counted.
    """

    def __init__(self, http_client: ProviderHTTPClient) -> None:
        super().__init__(Sport.FOOTBALL, http_client)

    def _by_id_path(self) -> str:
        return "/fixtures"

    def _by_date_path(self) -> str:
        return "/fixtures"

    def parse_fixture(self, item: dict[str, Any]) -> ExternalSnapshot:
        fixture = item["fixture"]
        status = fixture.get("status") or {}
        code = str(status.get("short") or "")
        goals = item.get("goals") or {}
        home, away = _int_or_none(goals.get("home")), _int_or_none(goals.get("away"))

        if code in ("AET", "PEN"):
            extra = (item.get("score") or {}).get("extratime") or goals.get("extra") or {}
            extra_home, extra_away = _int_or_none(extra.get("home")), _int_or_none(extra.get("away"))
            if extra_home is not None and extra_away is not None:
                home, away = extra_home, extra_away

        return ExternalSnapshot(
            external_id=str(fixture["id"]),
            sport=Sport.FOOTBALL,
            status_code=code,
            status_detail=status.get("long"),
            home_name=item["teams"]["home"]["name"],
            away_name=item["teams"]["away"]["name"],
            kickoff_at=_parse_kickoff(fixture["date"]),
            home_score=home,
            away_score=away,
            elapsed_minute=_int_or_none(status.get("elapsed")),
            decided_by=decided_by(code),
        )


class ApiSportsRugbyProvider(BaseProvider):
    """Rugby games; flat structure with "scores" instead of "goals"."""

    def __init__(self, http_client: ProviderHTTPClient) -> None:
        super().__init__(Sport.RUGBY, http_client)

    def _by_id_path(self) -> str:
        return "/games"

    def _by_date_path(self) -> str:
        return "/games"

    def parse_fixture(self, item: dict[str, Any]) -> ExternalSnapshot:
        status = item.get("status") or {}
        code = str(status.get("short") or "")
        scores = item.get("scores") or {}
        elapsed = status.get("elapsed", status.get("timer"))

        return ExternalSnapshot(
            external_id=str(item["id"]),
            sport=Sport.RUGBY,
            status_code=code,
            status_detail=status.get("long"),
            home_name=item["teams"]["home"]["name"],
            away_name=item["teams"]["away"]["name"],
            kickoff_at=_parse_kickoff(item.get("date") or item["timestamp"]),
            home_score=_int_or_none(scores.get("home")),
            away_score=_int_or_none(scores.get("away")),
            elapsed_minute=_int_or_none(elapsed),
            decided_by=decided_by(code),
        )


def build_api_sports_provider(sport: Sport, settings: Settings | None = None) -> Optional[BaseProvider]:
    """Provider for sport, or None when its API key is not configured."""
    settings = settings or get_settings()
    if sport == Sport.FOOTBALL:
        key, url, cls = settings.api_sports_football_key, settings.api_sports_football_url, ApiSportsFootballProvider
    else:
        key, url, cls = settings.api_sports_rugby_key, settings.api_sports_rugby_url, ApiSportsRugbyProvider
    if not key:
        return None
    http = ProviderHTTPClient(
        provider_name=f"api_sports_{sport.value}",
        base_url=url,
        headers={"x-apisports-key": key, "Cache-Control": "no-cache"},
        timeout_s=settings.provider_request_timeout_s,
    )
    return cls(http)
