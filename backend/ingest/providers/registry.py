"""
Provider registry: one provider per sport, started and closed together.
"""
from __future__ import annotations

from typing import Iterable, Optional

from shared.config import Settings, get_settings
from shared.models.enums import Sport
from shared.utils.logging import get_logger

from ingest.providers.api_sports import build_api_sports_provider
from ingest.providers.base import BaseProvider

logger = get_logger(__name__)


class ProviderRegistry:
    """Holds the active provider for each sport the deployment reconciles."""

    def __init__(self, providers: Iterable[BaseProvider] = ()) -> None:
        self._providers: dict[Sport, BaseProvider] = {p.sport: p for p in providers}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ProviderRegistry":
        settings = settings or get_settings()
        providers: list[BaseProvider] = []
        for raw in settings.reconcile_sports:
            try:
                sport = Sport(raw)
            except ValueError:
                logger.warning("unknown_sport_configured", sport=raw)
                continue
            provider = build_api_sports_provider(sport, settings)
            if provider is None:
                logger.warning("provider_not_configured", sport=sport.value, reason="missing_api_key")
                continue
            providers.append(provider)
        return cls(providers)

    @property
    def sports(self) -> list[Sport]:
        return list(self._providers)

    def get(self, sport: Sport) -> Optional[BaseProvider]:
        return self._providers.get(sport)

    async def start(self) -> None:
        for provider in self._providers.values():
            await provider.start()
        logger.info("providers_started", sports=[s.value for s in self._providers])

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
