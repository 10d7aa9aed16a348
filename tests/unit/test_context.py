"""Unit tests for EngineContext wiring, lifecycle and operator controls."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from futures_engine.engine.context import EngineContext
from futures_engine.errors import ServiceDegraded
from futures_engine.events import EventKind
from futures_engine.models.position import Position, PositionSide
from futures_engine.trade.circuit_breaker import CircuitBreaker
from futures_engine.trade.exchange_gateway import ExchangeGateway


@pytest.fixture
def gateway():
    gateway = MagicMock(spec=ExchangeGateway)
    gateway.circuit_breaker = CircuitBreaker(name="bybit")
    gateway.get_open_positions = AsyncMock(return_value=[])
    gateway.get_balance = AsyncMock(return_value={})
    gateway.aclose = AsyncMock()
    return gateway


@pytest.fixture
def ctx(settings, gateway):
    return EngineContext(settings, gateway=gateway)


class TestWiring:
    def test_builds_components_from_settings(self, ctx, gateway):
        assert ctx.gateway is gateway
        assert ctx.source.name == "synthetic"
        assert set(ctx.loops) == {"ETHUSDT"}
        assert ctx.advisor is None
        assert ctx.forwarder is None

    def test_status_before_start(self, ctx):
        status = ctx.status()
        assert status.running is False
        assert status.symbols["ETHUSDT"].state == "flat"
        assert status.open_positions == []
        assert status.circuit_breaker == "closed"
        assert status.emergency_stop is False

    @pytest.mark.asyncio
    async def test_status_reflects_adopted_position(self, ctx, gateway):
        gateway.get_open_positions.return_value = [
            Position(symbol="ETHUSDT", side=PositionSide.LONG, entry_price=2000.0, size=0.1)
        ]
        await ctx.coordinator.reconcile("ETHUSDT")

        status = ctx.status()
        assert status.symbols["ETHUSDT"].state == "open"
        assert status.symbols["ETHUSDT"].position.side is PositionSide.LONG
        assert len(status.open_positions) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, ctx, gateway):
        await ctx.start()
        try:
            assert ctx.running is True
            gateway.get_open_positions.assert_awaited_with("ETHUSDT")
            assert ctx.ingestor.subscribed == {"ETHUSDT"}
            assert ctx.loops["ETHUSDT"].running is True
            assert ctx.ingestor.snapshot("ETHUSDT") is not None
        finally:
            await ctx.stop()

        assert ctx.running is False
        assert ctx.loops["ETHUSDT"].running is False
        assert ctx.ingestor.subscribed == set()
        gateway.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, ctx, gateway):
        await ctx.start()
        await ctx.start()
        assert gateway.get_open_positions.await_count == 1

        await ctx.stop()
        await ctx.stop()
        gateway.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reconcile_failure_does_not_block_start(self, ctx, gateway):
        gateway.get_open_positions.side_effect = ServiceDegraded("venue down")
        await ctx.start()
        try:
            assert ctx.loops["ETHUSDT"].running is True
            errors = [m.payload for m in ctx.events.drain(EventKind.ERROR)]
            assert any(e["stage"] == "reconcile" for e in errors)
        finally:
            await ctx.stop()

    @pytest.mark.asyncio
    async def test_forwarder_connected_and_released(self, settings, gateway):
        forwarder = MagicMock()
        forwarder.connect = AsyncMock()
        forwarder.stop = AsyncMock()
        forwarder.disconnect = AsyncMock()
        ctx = EngineContext(settings, gateway=gateway, forwarder=forwarder)

        await ctx.start()
        forwarder.connect.assert_awaited_once()
        forwarder.start.assert_called_once()

        await ctx.stop()
        forwarder.stop.assert_awaited_once()
        forwarder.disconnect.assert_awaited_once()


class TestOperatorControls:
    def test_emergency_stop_and_clear(self, ctx):
        assert ctx.emergency_stop("operator") is True
        assert ctx.emergency_stop("again") is False
        assert ctx.status().emergency_stop is True
        assert ctx.status().risk["emergency_reason"] == "operator"

        ctx.clear_emergency_stop()
        assert ctx.status().emergency_stop is False

    @pytest.mark.asyncio
    async def test_clear_error_when_not_in_error(self, ctx):
        assert await ctx.clear_error("ETHUSDT") is False
