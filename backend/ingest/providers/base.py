"""
Abstract base class for sports data providers.
Defines the two queries the reconciler relies on: lookup by id and list by date range.
"""
from __future__ import annotations

import abc
from datetime import date
from typing import Any, Optional

from shared.models.domain import ExternalSnapshot, ReconcileWindow
from shared.models.enums import Sport
from shared.utils.http_client import (
    ProviderError,
    ProviderHTTPClient,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnavailable,
)
from shared.utils.logging import get_logger

logger = get_logger(__name__)

__all__ = [
    "BaseProvider",
    "ProviderError",
    "ProviderRateLimited",
    "ProviderTimeout",
    "ProviderUnavailable",
]


class BaseProvider(abc.ABC):
    """
    One provider feed for one sport.

    The base class owns the HTTP lifecycle and the API-Sports style error envelope;
    subclasses only know their endpoints and how to parse one fixture.
    """

    def __init__(self, sport: Sport, http_client: ProviderHTTPClient) -> None:
        self._sport = sport
        self._http = http_client

    @property
    def name(self) -> str:
        return self._http.provider

    @property
    def sport(self) -> Sport:
        return self._sport

    async def start(self) -> None:
        await self._http.start()

    async def close(self) -> None:
        await self._http.close()

    async def fetch_by_id(self, external_id: str) -> Optional[ExternalSnapshot]:
        """Fetch one fixture by its provider id; None if the provider does not know it."""
        items = await self._request(self._by_id_path(), {"id": external_id})
        for item in items:
            snapshot = self._parse_safely(item)
            if snapshot is not None and snapshot.external_id == str(external_id):
                return snapshot
        return None

    async def list_by_date_range(self, window: ReconcileWindow) -> list[ExternalSnapshot]:
        """Every fixture kicking off on any day of the window, de-duplicated by id."""
        seen: dict[str, ExternalSnapshot] = {}
        for day in window.days():
            for item in await self._request(self._by_date_path(), {"date": day.isoformat()}):
                snapshot = self._parse_safely(item)
                if snapshot is not None and _in_window(snapshot.kickoff_at.date(), window):
                    seen.setdefault(snapshot.external_id, snapshot)
        return list(seen.values())

    async def _request(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        body = await self._http.get_json(path, params=params)
        if body is None:
            return []
        if not isinstance(body, dict):
            raise ProviderUnavailable(self.name, f"unexpected body type {type(body).__name__}")

        errors = body.get("errors")
        if errors:
            # API-Sports answers 200 with an "errors" object on quota and auth failures.
            values = errors.values() if isinstance(errors, dict) else errors
            message = ", ".join(str(v) for v in values)
            if isinstance(errors, dict) and ("requests" in errors or "rateLimit" in errors):
                raise ProviderRateLimited(self.name)
            raise ProviderUnavailable(self.name, message)

        items = body.get("response") or []
        if not isinstance(items, list):
            raise ProviderUnavailable(self.name, "response field is not a list")
        return items

    def _parse_safely(self, item: dict[str, Any]) -> Optional[ExternalSnapshot]:
        try:
            return self.parse_fixture(item)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("provider_fixture_unparseable", provider=self.name, error=str(exc))
            return None

    @abc.abstractmethod
    def _by_id_path(self) -> str:
        ...

    @abc.abstractmethod
    def _by_date_path(self) -> str:
        ...

    @abc.abstractmethod
    def parse_fixture(self, item: dict[str, Any]) -> ExternalSnapshot:
        """Convert one raw provider item into a snapshot. May raise KeyError/ValueError."""


def _in_window(day: date, window: ReconcileWindow) -> bool:
    return window.date_from <= day <= window.date_to
