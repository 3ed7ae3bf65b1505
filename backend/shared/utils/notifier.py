"""
Change notification for processes that do not own the subscriber registry.

The kickoff worker and the cron reconciler run outside the API process; they
trigger a broadcast by calling the API's notify endpoint.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol

import httpx

from shared.config import Settings, get_settings
from shared.models.domain import NotifyResult
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class ChangeNotifier(Protocol):
    """Anything that can trigger a broadcast. Implementations must not raise."""

    async def notify_change(self, reason: str = "") -> Any:
        ...


class HttpChangeNotifier:
    """POSTs /v1/notify on the API. Failures are logged, never raised."""

    def __init__(
        self,
        base_url: str,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = base_url.rstrip("/") + "/v1/notify"
        self._timeout = timeout_s or get_settings().notify_timeout_s
        self._transport = transport

    async def notify_change(self, reason: str = "") -> Optional[NotifyResult]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, params={"reason": reason} if reason else None)
                resp.raise_for_status()
                result = NotifyResult.model_validate(resp.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("notify_change_failed", url=self._url, reason=reason, error=str(exc))
            return None
        logger.info(
            "notify_change_sent",
            reason=reason,
            signal_id=result.signal_id,
            subscribers=result.subscriber_count,
        )
        return result


def build_notifier(settings: Settings | None = None) -> Optional[HttpChangeNotifier]:
    settings = settings or get_settings()
    if not settings.notify_url:
        return None
    return HttpChangeNotifier(settings.notify_url, settings.notify_timeout_s)
