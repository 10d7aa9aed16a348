"""Unit tests for EventChannels, stream message envelopes and FixedRateSchedule."""

from __future__ import annotations

import asyncio

import pytest

from conftest import _make_signal
from futures_engine.engine.schedule import FixedRateSchedule
from futures_engine.errors import VenueRejected
from futures_engine.events import EventChannels, EventKind
from futures_engine.models.messages import MarketTickMessage, StreamMessage


# --- EventChannels ---


class TestEventChannels:
    def test_typed_helpers_route_by_kind(self, events):
        events.emit_tick("ETHUSDT", {"price": 1.0})
        events.emit_signal(_make_signal())
        events.emit_execution({"event": "position_opened"})
        events.emit_error("execution", VenueRejected("nope", code=1), symbol="ETHUSDT")

        for kind in EventKind:
            assert events.qsize(kind) == 1

    def test_signal_payload_is_json_ready(self, events):
        events.emit_signal(_make_signal())
        msg = events.drain(EventKind.SIGNAL)[0]
        assert msg.type == "trading_signal"
        assert msg.payload["action"] == "LONG"
        assert isinstance(msg.payload["timestamp"], str)

    def test_error_payload(self, events):
        events.emit_error("ingest", ValueError("bad"), symbol="ETHUSDT")
        payload = events.drain(EventKind.ERROR)[0].payload
        assert payload == {
            "stage": "ingest",
            "symbol": "ETHUSDT",
            "error_type": "ValueError",
            "message": "bad",
        }

    def test_full_channel_drops_oldest(self):
        events = EventChannels(maxsize=2)
        for i in range(3):
            events.emit_tick("ETHUSDT", {"seq": i})
        kept = [m.payload["seq"] for m in events.drain(EventKind.TICK)]
        assert kept == [1, 2]
        assert events.dropped[EventKind.TICK] == 1

    def test_drain_empties(self, events):
        events.emit_tick("ETHUSDT", {})
        events.drain(EventKind.TICK)
        assert events.drain(EventKind.TICK) == []

    @pytest.mark.asyncio
    async def test_get_waits_for_publish(self, events):
        getter = asyncio.create_task(events.get(EventKind.EXECUTION))
        await asyncio.sleep(0)
        events.emit_execution({"event": "position_closed"})
        msg = await asyncio.wait_for(getter, timeout=1)
        assert msg.payload["event"] == "position_closed"


class TestStreamMessage:
    def test_redis_round_trip(self):
        msg = MarketTickMessage(payload={"symbol": "ETHUSDT", "price": 2000.0})
        restored = StreamMessage.from_redis({b"data": msg.to_redis()["data"].encode()})
        assert restored.msg_id == msg.msg_id
        assert restored.type == "market_tick"
        assert restored.payload["price"] == 2000.0


# --- FixedRateSchedule ---


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestFixedRateSchedule:
    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            FixedRateSchedule(0)

    def test_on_time_cycle(self):
        clock = _Clock()
        schedule = FixedRateSchedule(10.0, clock=clock)
        clock.now += 3.0
        assert schedule.advance() == (pytest.approx(7.0), 0)

    def test_grid_does_not_drift(self):
        clock = _Clock()
        schedule = FixedRateSchedule(10.0, clock=clock)
        clock.now += 3.0
        delay, _ = schedule.advance()
        clock.now += delay + 4.0
        delay, skipped = schedule.advance()
        assert delay == pytest.approx(6.0)
        assert skipped == 0

    def test_overrun_skips_missed_slots(self):
        clock = _Clock()
        schedule = FixedRateSchedule(10.0, clock=clock)
        clock.now += 25.0
        delay, skipped = schedule.advance()
        assert skipped == 2
        assert delay == pytest.approx(5.0)

    def test_overrun_to_exact_boundary(self):
        clock = _Clock()
        schedule = FixedRateSchedule(10.0, clock=clock)
        clock.now += 10.0
        delay, skipped = schedule.advance()
        assert skipped == 1
        assert delay == pytest.approx(10.0)

    def test_reset(self):
        clock = _Clock()
        schedule = FixedRateSchedule(10.0, clock=clock)
        clock.now += 55.0
        schedule.reset()
        assert schedule.advance() == (pytest.approx(10.0), 0)
