"""
Redis connection manager.
Provides the async connection pool, leader-key helpers and the change-signal pub/sub channel.
"""
from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

LEADER_KEY = "leader:{name}"


class RedisManager:
    """Manages the async Redis connection pool and typed helpers."""

    # Renew TTL only if the caller still owns the key.
    _RENEW_LEADER_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("expire", KEYS[1], ARGV[2])
    return 1
end
return 0
"""

    # Delete only if the caller still owns the key.
    _RELEASE_LEADER_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("del", KEYS[1])
    return 1
end
return 0
"""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool and verify it."""
        self._pool = aioredis.from_url(
            self._settings.redis_url,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
        )
        await self._pool.ping()
        logger.info("redis_connected")

    async def disconnect(self) -> None:
        if self._pool:
            await self._pool.aclose()
            self._pool = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── Leader election ─────────────────────────────────────────────────
    async def try_acquire_leader(self, name: str, owner: str, ttl_s: int) -> bool:
        """SET NX with expiry; never waits."""
        key = LEADER_KEY.format(name=name)
        return bool(await self.client.set(key, owner, nx=True, ex=ttl_s))

    async def leader_owner(self, name: str) -> Optional[str]:
        return await self.client.get(LEADER_KEY.format(name=name))

    async def renew_leader(self, name: str, owner: str, ttl_s: int) -> bool:
        key = LEADER_KEY.format(name=name)
        result = await self.client.eval(self._RENEW_LEADER_SCRIPT, 1, key, owner, str(ttl_s))
        return bool(result)

    async def release_leader(self, name: str, owner: str) -> bool:
        key = LEADER_KEY.format(name=name)
        result = await self.client.eval(self._RELEASE_LEADER_SCRIPT, 1, key, owner)
        return bool(result)

    # ── Change signal pub/sub ───────────────────────────────────────────
    async def publish(self, channel: str, payload: str) -> int:
        return await self.client.publish(channel, payload)

    async def subscribe(self, channel: str) -> PubSub:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        return pubsub
