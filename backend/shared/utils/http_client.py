"""
Async HTTP client wrapper for provider requests.

One attempt per call: the next scheduled reconciliation is the retry. Transport
outcomes are folded into the ProviderError taxonomy so callers catch a single type.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from shared.config import get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_LATENCY, PROVIDER_REQUESTS

logger = get_logger(__name__)


class ProviderError(Exception):
    """Base for every recoverable provider failure."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ProviderTimeout(ProviderError):
    pass


class ProviderRateLimited(ProviderError):
    def __init__(self, provider: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(provider, f"rate limited (retry after {retry_after}s)")


class ProviderUnavailable(ProviderError):
    """5xx, connection failure, or an unusable response body."""


class ProviderHTTPClient:
    """
    Async HTTP client tailored for sports data provider APIs.
    Handles timeouts and error classification, and records metrics per request.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._provider = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or get_settings().provider_request_timeout_s
        self._default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def provider(self) -> str:
        return self._provider

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Optional[Any]:
        """
        GET and decode a JSON body.

        Returns:
            The decoded body, or None on 404.

        Raises:
            ProviderTimeout, ProviderRateLimited, ProviderUnavailable.
        """
        if not self._client:
            raise RuntimeError("ProviderHTTPClient not started. Call start() first.")

        start_time = time.perf_counter()
        status = "error"
        try:
            resp = await self._client.get(path, params=params)
            status = str(resp.status_code)
        except httpx.TimeoutException as exc:
            status = "timeout"
            logger.warning("provider_timeout", provider=self._provider, path=path)
            raise ProviderTimeout(self._provider, f"timeout on {path}") from exc
        except httpx.HTTPError as exc:
            logger.warning("provider_transport_error", provider=self._provider, path=path, error=str(exc))
            raise ProviderUnavailable(self._provider, str(exc)) from exc
        finally:
            PROVIDER_LATENCY.labels(provider=self._provider).observe(time.perf_counter() - start_time)
            PROVIDER_REQUESTS.labels(provider=self._provider, status=status).inc()

        if resp.status_code == 404:
            return None
        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            logger.warning("provider_rate_limited", provider=self._provider, path=path, retry_after=retry_after)
            raise ProviderRateLimited(self._provider, float(retry_after) if retry_after else None)
        if resp.status_code >= 500:
            logger.warning("provider_server_error", provider=self._provider, path=path, status=resp.status_code)
            raise ProviderUnavailable(self._provider, f"HTTP {resp.status_code} on {path}")
        if resp.status_code >= 400:
            logger.error("provider_http_error", provider=self._provider, path=path, status=resp.status_code)
            raise ProviderUnavailable(self._provider, f"HTTP {resp.status_code} on {path}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderUnavailable(self._provider, f"invalid JSON from {path}") from exc

        logger.debug(
            "provider_request_success",
            provider=self._provider,
            path=path,
            latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return body
