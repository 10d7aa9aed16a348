"""Unit tests for RedisEventForwarder with a mocked redis client."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from futures_engine.events import EventKind
from futures_engine.models.messages import MarketTickMessage, StreamMessage
from futures_engine.redis_client import STREAMS, RedisEventForwarder


@pytest.fixture
def client():
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.xadd = AsyncMock(return_value=b"1700000000000-0")
    client.xrevrange = AsyncMock(return_value=[])
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def forwarder(events, client):
    return RedisEventForwarder(events, client=client, maxlen=500)


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestPublish:
    @pytest.mark.asyncio
    async def test_xadd_arguments(self, forwarder, client):
        msg = MarketTickMessage(payload={"symbol": "ETHUSDT", "price": 2000.0})
        msg_id = await forwarder.publish("engine:ticks", msg)

        assert msg_id == "1700000000000-0"
        client.xadd.assert_awaited_once_with(
            "engine:ticks", msg.to_redis(), maxlen=500, approximate=True
        )
        assert forwarder.forwarded == 1

    @pytest.mark.asyncio
    async def test_read_latest(self, forwarder, client):
        msg = MarketTickMessage(payload={"price": 1.0})
        client.xrevrange.return_value = [(b"1-0", {b"data": msg.to_redis()["data"].encode()})]

        latest = await forwarder.read_latest("engine:ticks")
        assert isinstance(latest, StreamMessage)
        assert latest.msg_id == msg.msg_id

    @pytest.mark.asyncio
    async def test_read_latest_empty_stream(self, forwarder):
        assert await forwarder.read_latest("engine:ticks") is None


class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_pings_injected_client(self, forwarder, client):
        await forwarder.connect()
        client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, forwarder, client):
        await forwarder.disconnect()
        client.aclose.assert_awaited_once()
        assert forwarder.client is None


class TestForwarding:
    @pytest.mark.asyncio
    async def test_channels_forwarded_to_their_streams(self, forwarder, client, events):
        forwarder.start()
        try:
            events.emit_tick("ETHUSDT", {"price": 2000.0})
            events.emit_execution({"event": "position_opened"})
            await _wait_for(lambda: client.xadd.await_count == 2)
        finally:
            await forwarder.stop()

        streams = {call.args[0] for call in client.xadd.await_args_list}
        assert streams == {STREAMS[EventKind.TICK], STREAMS[EventKind.EXECUTION]}

    @pytest.mark.asyncio
    async def test_redis_error_does_not_kill_task(self, forwarder, client, events):
        client.xadd.side_effect = [RedisConnectionError("down"), b"2-0"]
        forwarder.start()
        try:
            events.emit_tick("ETHUSDT", {"seq": 1})
            await _wait_for(lambda: client.xadd.await_count == 1)
            events.emit_tick("ETHUSDT", {"seq": 2})
            await _wait_for(lambda: client.xadd.await_count == 2, timeout=3.0)
        finally:
            await forwarder.stop()

        assert forwarder.forwarded == 1

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, forwarder):
        forwarder.start()
        tasks = list(forwarder._tasks)
        forwarder.start()
        assert forwarder._tasks == tasks
        await forwarder.stop()
        assert forwarder._tasks == []
