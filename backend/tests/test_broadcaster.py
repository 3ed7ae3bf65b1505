"""
Change broadcaster tests with fake WebSocket objects.

One broken or slow subscriber must never keep the signal from the others.
"""
from __future__ import annotations

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocketDisconnect
from starlette.websockets import WebSocketState

from api.ws.broadcaster import ChangeBroadcaster
from shared.models.domain import ChangeSignal


def fake_ws(send=None) -> MagicMock:
    ws = MagicMock()
    ws.client = None
    ws.client_state = WebSocketState.CONNECTED
    ws.accept = AsyncMock()
    ws.close = AsyncMock()
    ws.send_text = send or AsyncMock()
    return ws


@pytest.fixture
def broadcaster(settings) -> ChangeBroadcaster:
    fast = settings.model_copy(update={"broadcast_write_timeout_s": 0.05})
    return ChangeBroadcaster(fast)


@pytest.mark.asyncio
async def test_dead_subscriber_does_not_block_others(broadcaster: ChangeBroadcaster) -> None:
    alive_a, alive_b = fake_ws(), fake_ws()
    dead = fake_ws(send=AsyncMock(side_effect=RuntimeError("socket closed")))
    for ws in (alive_a, dead, alive_b):
        await broadcaster.subscribe(ws)

    delivered = await broadcaster.broadcast(ChangeSignal(reason="test"))

    assert delivered == 2
    assert broadcaster.subscriber_count == 2
    payload = json.loads(alive_a.send_text.await_args.args[0])
    assert payload["type"] == "refresh"
    assert payload["reason"] == "test"
    assert "signal_id" in payload and "timestamp" in payload
    alive_b.send_text.assert_awaited_once()
    dead.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_slow_subscriber_is_evicted_after_write_timeout(broadcaster: ChangeBroadcaster) -> None:
    async def hang(_: str) -> None:
        await asyncio.sleep(10)

    fast, slow = fake_ws(), fake_ws(send=AsyncMock(side_effect=hang))
    await broadcaster.subscribe(fast)
    await broadcaster.subscribe(slow)

    started = time.monotonic()
    delivered = await broadcaster.broadcast(ChangeSignal())

    assert time.monotonic() - started < 2
    assert delivered == 1
    assert broadcaster.subscriber_count == 1
    fast.send_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_notify_change_reports_subscribers(broadcaster: ChangeBroadcaster) -> None:
    await broadcaster.subscribe(fake_ws())
    await broadcaster.subscribe(fake_ws())

    result = await broadcaster.notify_change(reason="kickoff")

    assert result.subscriber_count == 2
    assert len(result.signal_id) == 32


@pytest.mark.asyncio
async def test_broadcast_without_subscribers(broadcaster: ChangeBroadcaster) -> None:
    assert await broadcaster.broadcast(ChangeSignal()) == 0
    assert (await broadcaster.notify_change()).subscriber_count == 0


@pytest.mark.asyncio
async def test_sweep_evicts_closed_and_pings_idle(broadcaster: ChangeBroadcaster) -> None:
    closed, idle, fresh = fake_ws(), fake_ws(), fake_ws()
    await broadcaster.subscribe(closed)
    idle_sub = await broadcaster.subscribe(idle)
    await broadcaster.subscribe(fresh)
    closed.client_state = WebSocketState.DISCONNECTED
    idle_sub.last_sent_at -= 3600

    evicted = await broadcaster.sweep()

    assert evicted == 1
    assert broadcaster.subscriber_count == 2
    assert json.loads(idle.send_text.await_args.args[0])["type"] == "ping"
    fresh.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_handle_connection_lifecycle(broadcaster: ChangeBroadcaster) -> None:
    ws = fake_ws()
    ws.receive_text = AsyncMock(side_effect=["ping", WebSocketDisconnect(code=1000)])

    await broadcaster.handle_connection(ws)

    ws.accept.assert_awaited_once()
    hello = json.loads(ws.send_text.await_args_list[0].args[0])
    assert hello["type"] == "subscribed"
    assert broadcaster.subscriber_count == 0


@pytest.mark.asyncio
async def test_unsubscribe_unknown_id(broadcaster: ChangeBroadcaster) -> None:
    assert not await broadcaster.unsubscribe("missing")


@pytest.mark.asyncio
async def test_bridged_notify_publishes_to_redis(settings) -> None:
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    bridged = ChangeBroadcaster(settings.model_copy(update={"broadcast_redis_bridge": True}), redis)
    ws = fake_ws()
    await bridged.subscribe(ws)

    result = await bridged.notify_change(reason="reconcile:football")

    channel, payload = redis.publish.await_args.args
    assert channel == settings.broadcast_redis_channel
    assert json.loads(payload)["signal_id"] == result.signal_id
    # Local delivery happens when the message comes back over the channel.
    ws.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_bridge_publish_failure_falls_back_to_local(settings) -> None:
    redis = MagicMock()
    redis.publish = AsyncMock(side_effect=ConnectionError("redis gone"))
    bridged = ChangeBroadcaster(settings.model_copy(update={"broadcast_redis_bridge": True}), redis)
    ws = fake_ws()
    await bridged.subscribe(ws)

    await bridged.notify_change()

    ws.send_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_and_stop_close_subscribers(broadcaster: ChangeBroadcaster) -> None:
    ws = fake_ws()
    await broadcaster.start()
    await broadcaster.subscribe(ws)

    await broadcaster.stop()

    assert broadcaster.subscriber_count == 0
    ws.close.assert_awaited_once_with(code=1001)
