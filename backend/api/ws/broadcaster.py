"""
Change-notification broadcaster.

Keeps the process-local registry of WebSocket subscribers and pushes a small
"refresh" cue to all of them whenever persisted match state changed. Signals
carry no data; a client that misses some simply refetches on the next one.

- Per-subscriber sends run concurrently, each bounded by a write timeout.
  A send that fails or times out evicts that subscriber only.
- A liveness loop pings idle subscribers and evicts dead transports even
  when no broadcast happens.
- The registry is not shared between API instances. With
  broadcast_redis_bridge on, signals travel over a Redis channel and every
  instance delivers them to its own subscribers.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.config import Settings, get_settings
from shared.models.domain import ChangeSignal, NotifyResult
from shared.utils.logging import get_logger
from shared.utils.metrics import SIGNALS_BROADCAST, SUBSCRIBERS_ACTIVE, SUBSCRIBERS_EVICTED
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


@dataclass
class Subscriber:
    """One open change stream."""

    ws: WebSocket
    subscriber_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    connected_at: float = field(default_factory=time.monotonic)
    last_sent_at: float = field(default_factory=time.monotonic)
    remote_addr: str = ""

    @property
    def is_open(self) -> bool:
        return self.ws.client_state == WebSocketState.CONNECTED


class ChangeBroadcaster:
    def __init__(self, settings: Settings | None = None, redis: RedisManager | None = None) -> None:
        self._settings = settings or get_settings()
        self._redis = redis
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self._liveness_task: Optional[asyncio.Task[None]] = None
        self._bridge_task: Optional[asyncio.Task[None]] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def bridged(self) -> bool:
        return self._settings.broadcast_redis_bridge and self._redis is not None

    async def start(self) -> None:
        self._shutdown.clear()
        self._liveness_task = asyncio.create_task(self._run_liveness())
        if self.bridged:
            self._bridge_task = asyncio.create_task(self._run_bridge())
        logger.info("broadcaster_started", bridged=self.bridged)

    async def stop(self) -> None:
        self._shutdown.set()
        for task in (self._liveness_task, self._bridge_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for sub in list(self._subscribers.values()):
            await self._evict(sub, "server_shutdown", code=1001)
        logger.info("broadcaster_stopped")

    # ── registry ────────────────────────────────────────────────────────

    async def subscribe(self, ws: WebSocket) -> Subscriber:
        """Register an already-accepted socket."""
        sub = Subscriber(
            ws=ws,
            remote_addr=f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown",
        )
        async with self._lock:
            self._subscribers[sub.subscriber_id] = sub
            SUBSCRIBERS_ACTIVE.set(len(self._subscribers))
        logger.info("subscriber_added", subscriber_id=sub.subscriber_id, remote_addr=sub.remote_addr)
        return sub

    async def unsubscribe(self, subscriber_id: str, reason: str = "disconnect") -> bool:
        async with self._lock:
            sub = self._subscribers.pop(subscriber_id, None)
            SUBSCRIBERS_ACTIVE.set(len(self._subscribers))
        if sub is None:
            return False
        SUBSCRIBERS_EVICTED.labels(reason=reason).inc()
        logger.info(
            "subscriber_removed",
            subscriber_id=subscriber_id,
            reason=reason,
            alive_seconds=round(time.monotonic() - sub.connected_at, 1),
        )
        return True

    async def handle_connection(self, ws: WebSocket) -> None:
        """Serve one subscriber from accept to disconnect."""
        await ws.accept()
        sub = await self.subscribe(ws)
        await self._deliver(sub, ChangeSignal(type="subscribed").model_dump_json())
        try:
            while not self._shutdown.is_set():
                # Clients may send anything (usually "ping"); it only proves they are alive.
                await ws.receive_text()
                sub.last_sent_at = time.monotonic()
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.warning("subscriber_stream_error", subscriber_id=sub.subscriber_id, error=str(exc))
        finally:
            await self.unsubscribe(sub.subscriber_id)

    # ── fan-out ─────────────────────────────────────────────────────────

    async def notify_change(self, reason: str = "") -> NotifyResult:
        """Emit one refresh signal, through the redis bridge when enabled."""
        signal = ChangeSignal(reason=reason or None)
        if self.bridged:
            try:
                await self._redis.publish(self._settings.broadcast_redis_channel, signal.model_dump_json())
                return NotifyResult(subscriber_count=self.subscriber_count, signal_id=signal.signal_id)
            except Exception as exc:
                logger.warning("broadcast_bridge_publish_failed", error=str(exc))
        await self.broadcast(signal)
        return NotifyResult(subscriber_count=self.subscriber_count, signal_id=signal.signal_id)

    async def broadcast(self, signal: ChangeSignal, origin: str = "local") -> int:
        """Send to every subscriber; returns how many received it."""
        async with self._lock:
            targets = list(self._subscribers.values())
        if not targets:
            return 0

        payload = signal.model_dump_json()
        results = await asyncio.gather(*(self._deliver(sub, payload) for sub in targets), return_exceptions=True)

        delivered = 0
        for sub, ok in zip(targets, results):
            if ok is True:
                delivered += 1
            else:
                await self._evict(sub, "send_failed")

        SIGNALS_BROADCAST.labels(origin=origin).inc()
        logger.info(
            "change_signal_broadcast",
            signal_id=signal.signal_id,
            reason=signal.reason,
            delivered=delivered,
            evicted=len(targets) - delivered,
        )
        return delivered

    async def _deliver(self, sub: Subscriber, payload: str) -> bool:
        if not sub.is_open:
            return False
        try:
            await asyncio.wait_for(sub.ws.send_text(payload), timeout=self._settings.broadcast_write_timeout_s)
        except Exception as exc:
            logger.debug("subscriber_send_failed", subscriber_id=sub.subscriber_id, error=repr(exc))
            return False
        sub.last_sent_at = time.monotonic()
        return True

    async def _evict(self, sub: Subscriber, reason: str, code: int = 1011) -> None:
        if not await self.unsubscribe(sub.subscriber_id, reason=reason):
            return
        try:
            if sub.is_open:
                await asyncio.wait_for(sub.ws.close(code=code), timeout=self._settings.broadcast_write_timeout_s)
        except Exception as exc:
            logger.debug("subscriber_close_failed", subscriber_id=sub.subscriber_id, error=repr(exc))

    # ── background loops ────────────────────────────────────────────────

    async def sweep(self) -> int:
        """Evict closed transports and ping idle ones. Returns the number evicted."""
        now = time.monotonic()
        keepalive = self._settings.broadcast_keepalive_interval_s
        async with self._lock:
            targets = list(self._subscribers.values())

        evicted = 0
        ping = ChangeSignal(type="ping").model_dump_json()
        for sub in targets:
            if not sub.is_open:
                await self._evict(sub, "transport_closed")
                evicted += 1
            elif now - sub.last_sent_at >= keepalive and not await self._deliver(sub, ping):
                await self._evict(sub, "keepalive_failed")
                evicted += 1
        if evicted:
            logger.info("subscribers_swept", evicted=evicted, remaining=self.subscriber_count)
        return evicted

    async def _run_liveness(self) -> None:
        interval = min(self._settings.broadcast_sweep_interval_s, self._settings.broadcast_keepalive_interval_s)
        while not self._shutdown.is_set():
            try:
                await asyncio.sleep(interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("broadcaster_sweep_error", error=str(exc))

    async def _run_bridge(self) -> None:
        channel = self._settings.broadcast_redis_channel
        pubsub = await self._redis.subscribe(channel)
        logger.info("broadcast_bridge_started", channel=channel)
        try:
            while not self._shutdown.is_set():
                try:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if message and message["type"] == "message":
                        await self.broadcast(ChangeSignal.model_validate_json(message["data"]), origin="bridge")
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("broadcast_bridge_error", error=str(exc))
                    await asyncio.sleep(1.0)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
