"""Signed Bybit v5 REST gateway (USDT linear perpetuals, httpx)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import TYPE_CHECKING, TypeVar

import httpx
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from futures_engine.errors import (
    OrderBelowMinimum,
    ServiceDegraded,
    TransientNetworkError,
    ValidationError,
    VenueRejected,
)
from futures_engine.models.candle import Candle
from futures_engine.models.indicator_set import IndicatorSet
from futures_engine.models.order import OrderResult
from futures_engine.models.position import (
    AssetBalance,
    ClosedPnl,
    InstrumentInfo,
    Position,
    PositionSide,
)
from futures_engine.models.snapshot import MarketData, OrderBook
from futures_engine.models.ticker import Ticker
from futures_engine.trade.signing import auth_headers, canonical_query
from futures_engine.trade.venue_schemas import (
    ClosedPnlList,
    InstrumentList,
    KlineResult,
    OrderAck,
    OrderBookResult,
    PositionList,
    TickerList,
    VenueEnvelope,
    WalletResult,
)

if TYPE_CHECKING:
    from futures_engine.config import Settings
    from futures_engine.trade.circuit_breaker import CircuitBreaker
    from futures_engine.trade.rate_limiter import RateLimiter

logger = structlog.get_logger()

CATEGORY = "linear"

# retCodes that mean "try again later" rather than "no"
TRANSIENT_RET_CODES = {10000, 10006, 10016, 10018}
LEVERAGE_NOT_MODIFIED = 110043

INTERVALS = {
    "1m": "1",
    "3m": "3",
    "5m": "5",
    "15m": "15",
    "30m": "30",
    "1h": "60",
    "2h": "120",
    "4h": "240",
    "6h": "360",
    "12h": "720",
    "1d": "D",
    "1w": "W",
}

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def round_to_step(value: float, step: float) -> Decimal:
    """Round down to a multiple of the venue step."""
    step_d = Decimal(str(step))
    if step_d <= 0:
        return Decimal(str(value))
    return (Decimal(str(value)) / step_d).to_integral_value(rounding=ROUND_DOWN) * step_d


def _ms_to_datetime(ms: int | str | None) -> datetime:
    if not ms:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


class ExchangeGateway:
    """
    Every call: rate-limit token -> circuit-breaker admission -> signed
    request with exponential backoff on transient failures.

    Transient failures (transport errors, timeouts, 5xx, 429, throttling
    codes) are retried; once retries run out the breaker records a failure
    and ServiceDegraded is raised. 4xx and business error codes raise
    VenueRejected immediately and count as a healthy venue.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        base_url: str = "https://api-testnet.bybit.com",
        recv_window_ms: int = 5000,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.recv_window_ms = recv_window_ms
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._instruments: dict[str, InstrumentInfo] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
    ) -> ExchangeGateway:
        return cls(
            api_key=settings.BYBIT_API_KEY,
            api_secret=settings.BYBIT_API_SECRET,
            rate_limiter=rate_limiter,
            circuit_breaker=circuit_breaker,
            base_url=settings.BYBIT_BASE_URL,
            recv_window_ms=settings.BYBIT_RECV_WINDOW_MS,
            max_retries=settings.MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # --- Market methods ---

    async def get_ticker(self, symbol: str) -> Ticker:
        result = await self._request("GET", "/v5/market/tickers", {"category": CATEGORY, "symbol": symbol})
        tickers = self._decode(TickerList, result, "tickers")
        if not tickers.rows:
            raise ValidationError(f"no ticker returned for {symbol}")
        row = tickers.rows[0]
        if row.lastPrice <= 0:
            raise ValidationError(f"non-positive last price for {symbol}: {row.lastPrice}")
        return Ticker(
            symbol=row.symbol,
            last=row.lastPrice,
            bid=row.bid1Price,
            ask=row.ask1Price,
            volume_24h=row.volume24h,
            change_24h=row.price24hPcnt * 100,
        )

    async def get_order_book(self, symbol: str, depth: int = 50) -> OrderBook:
        result = await self._request(
            "GET",
            "/v5/market/orderbook",
            {"category": CATEGORY, "symbol": symbol, "limit": depth},
        )
        raw = self._decode(OrderBookResult, result, "orderbook")
        book = OrderBook(
            symbol=raw.s,
            bids=[(price, qty) for price, qty in raw.b],
            asks=[(price, qty) for price, qty in raw.a],
            timestamp=_ms_to_datetime(raw.ts),
        )
        errors = book.ordering_errors()
        if errors:
            logger.warning("orderbook_rejected", symbol=symbol, errors=errors)
            raise ValidationError(f"malformed order book for {symbol}: {errors[0]}")
        return book

    async def get_klines(self, symbol: str, timeframe: str = "1h", limit: int = 50) -> list[Candle]:
        """Historical candles, oldest first."""
        interval = INTERVALS.get(timeframe)
        if interval is None:
            raise ValueError(f"unsupported timeframe '{timeframe}'")
        result = await self._request(
            "GET",
            "/v5/market/kline",
            {"category": CATEGORY, "symbol": symbol, "interval": interval, "limit": limit},
        )
        klines = self._decode(KlineResult, result, "kline")
        return [
            Candle(
                time=_ms_to_datetime(start),
                symbol=symbol,
                timeframe=timeframe,
                open=open_,
                high=high,
                low=low,
                close=close,
                volume=volume,
            )
            for start, open_, high, low, close, volume, _turnover in reversed(klines.rows)
        ]

    async def get_market_data(
        self,
        symbol: str,
        timeframe: str = "1h",
        kline_limit: int = 50,
        depth: int = 50,
    ) -> MarketData:
        """Ticker, depth and recent candles. Indicators are left neutral for the engine to fill."""
        ticker = await self.get_ticker(symbol)
        book = await self.get_order_book(symbol, depth)
        candles = await self.get_klines(symbol, timeframe, kline_limit)
        return MarketData(
            symbol=symbol,
            price=ticker.last,
            volume=ticker.volume_24h,
            ticker=ticker,
            order_book=book,
            candles=candles,
            indicators=IndicatorSet.neutral(ticker.last),
        )

    async def get_instrument(self, symbol: str) -> InstrumentInfo:
        """Lot size / tick size filters (cached per session)."""
        cached = self._instruments.get(symbol)
        if cached is not None:
            return cached
        result = await self._request(
            "GET", "/v5/market/instruments-info", {"category": CATEGORY, "symbol": symbol}
        )
        instruments = self._decode(InstrumentList, result, "instruments-info")
        if not instruments.rows:
            raise ValidationError(f"unknown instrument {symbol}")
        row = instruments.rows[0]
        info = InstrumentInfo(
            symbol=row.symbol,
            qty_step=row.lotSizeFilter.qtyStep,
            min_qty=row.lotSizeFilter.minOrderQty,
            tick_size=row.priceFilter.tickSize,
            max_leverage=row.leverageFilter.maxLeverage,
        )
        self._instruments[symbol] = info
        return info

    # --- Account methods ---

    async def get_balance(self) -> dict[str, AssetBalance]:
        result = await self._request(
            "GET", "/v5/account/wallet-balance", {"accountType": "UNIFIED"}, signed=True
        )
        wallet = self._decode(WalletResult, result, "wallet-balance")
        balances: dict[str, AssetBalance] = {}
        for account in wallet.rows:
            for coin in account.coin:
                available = coin.availableToWithdraw or max(coin.walletBalance - coin.locked, 0.0)
                balances[coin.coin] = AssetBalance(
                    asset=coin.coin,
                    available=available,
                    locked=max(coin.equity - available, 0.0),
                )
        return balances

    async def get_open_positions(self, symbol: str | None = None) -> list[Position]:
        params: dict = {"category": CATEGORY}
        if symbol:
            params["symbol"] = symbol
        else:
            params["settleCoin"] = "USDT"
        result = await self._request("GET", "/v5/position/list", params, signed=True)
        rows = self._decode(PositionList, result, "position-list").rows
        positions = []
        for row in rows:
            if row.size <= 0 or row.side not in ("Buy", "Sell"):
                continue
            positions.append(
                Position(
                    symbol=row.symbol,
                    side=PositionSide.LONG if row.side == "Buy" else PositionSide.SHORT,
                    entry_price=row.avgPrice,
                    size=row.size,
                    leverage=row.leverage,
                    stop_loss=row.stopLoss or None,
                    take_profit=row.takeProfit or None,
                    mark_price=row.markPrice,
                    unrealized_pnl=row.unrealisedPnl,
                    opened_at=_ms_to_datetime(row.createdTime),
                )
            )
        return positions

    async def get_closed_pnl(self, symbol: str, limit: int = 1) -> ClosedPnl | None:
        """Most recent realized PnL record for the symbol."""
        result = await self._request(
            "GET",
            "/v5/position/closed-pnl",
            {"category": CATEGORY, "symbol": symbol, "limit": limit},
            signed=True,
        )
        rows = self._decode(ClosedPnlList, result, "closed-pnl").rows
        if not rows:
            return None
        row = rows[0]
        return ClosedPnl(
            symbol=row.symbol,
            order_id=row.orderId,
            closed_pnl=row.closedPnl,
            avg_entry_price=row.avgEntryPrice,
            avg_exit_price=row.avgExitPrice,
            qty=row.qty,
            created_at=_ms_to_datetime(row.createdTime) if row.createdTime else None,
        )

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._request(
            "POST",
            "/v5/position/set-leverage",
            {
                "category": CATEGORY,
                "symbol": symbol,
                "buyLeverage": str(leverage),
                "sellLeverage": str(leverage),
            },
            signed=True,
            accept_codes=frozenset({LEVERAGE_NOT_MODIFIED}),
        )
        logger.info("leverage_set", symbol=symbol, leverage=leverage)

    # --- Trade methods ---

    async def open_position(
        self,
        symbol: str,
        side: PositionSide,
        qty: float,
        price: float | None = None,
        leverage: int | None = None,
        client_order_id: str | None = None,
    ) -> OrderResult:
        """Market order, or limit when `price` is given.

        The client order id is reused by every retry attempt so the venue
        de-duplicates a placement whose first response was lost.
        """
        instrument = await self.get_instrument(symbol)
        qty_d = round_to_step(qty, instrument.qty_step)
        if qty_d <= 0 or float(qty_d) < instrument.min_qty:
            raise OrderBelowMinimum(
                f"qty {qty} below minimum {instrument.min_qty} for {symbol}"
            )
        if leverage:
            await self.set_leverage(symbol, leverage)

        body: dict = {
            "category": CATEGORY,
            "symbol": symbol,
            "side": side.order_side,
            "orderType": "Limit" if price else "Market",
            "qty": format(qty_d, "f"),
            "positionIdx": 0,
        }
        if price:
            body["price"] = format(round_to_step(price, instrument.tick_size), "f")
            body["timeInForce"] = "GTC"
        if client_order_id:
            body["orderLinkId"] = client_order_id

        result = await self._request("POST", "/v5/order/create", body, signed=True)
        ack = self._decode(OrderAck, result, "order-create")
        logger.info(
            "order_placed",
            symbol=symbol,
            side=side.value,
            qty=format(qty_d, "f"),
            order_id=ack.orderId,
            order_link_id=ack.orderLinkId,
        )
        return OrderResult(
            order_id=ack.orderId,
            client_order_id=ack.orderLinkId,
            status="submitted",
        )

    async def close_position(self, symbol: str) -> OrderResult | None:
        """Reduce-only market order against the venue position. None when already flat."""
        positions = await self.get_open_positions(symbol)
        if not positions:
            logger.info("close_position_already_flat", symbol=symbol)
            return None
        position = positions[0]
        body = {
            "category": CATEGORY,
            "symbol": symbol,
            "side": position.side.opposite.order_side,
            "orderType": "Market",
            "qty": str(position.size),
            "reduceOnly": True,
            "positionIdx": 0,
        }
        result = await self._request("POST", "/v5/order/create", body, signed=True)
        ack = self._decode(OrderAck, result, "order-create")
        logger.info("close_order_placed", symbol=symbol, qty=position.size, order_id=ack.orderId)
        return OrderResult(order_id=ack.orderId, client_order_id=ack.orderLinkId, status="closing")

    async def set_stop_loss(self, symbol: str, price: float) -> None:
        await self._set_trading_stop(symbol, {"stopLoss": await self._format_price(symbol, price)})

    async def set_take_profit(self, symbol: str, price: float) -> None:
        await self._set_trading_stop(symbol, {"takeProfit": await self._format_price(symbol, price)})

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        await self._request(
            "POST",
            "/v5/order/cancel",
            {"category": CATEGORY, "symbol": symbol, "orderId": order_id},
            signed=True,
        )
        logger.info("order_cancelled", symbol=symbol, order_id=order_id)

    async def _set_trading_stop(self, symbol: str, fields: dict) -> None:
        body = {"category": CATEGORY, "symbol": symbol, "tpslMode": "Full", "positionIdx": 0}
        body.update(fields)
        await self._request("POST", "/v5/position/trading-stop", body, signed=True)
        logger.info("trading_stop_set", symbol=symbol, **fields)

    async def _format_price(self, symbol: str, price: float) -> str:
        instrument = await self.get_instrument(symbol)
        return format(round_to_step(price, instrument.tick_size), "f")

    # --- Transport ---

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        signed: bool = False,
        accept_codes: frozenset[int] = frozenset(),
    ) -> dict:
        await self.circuit_breaker.before_call()
        try:
            result = await self._send_with_retry(method, path, params or {}, signed, accept_codes)
        except VenueRejected as exc:
            # The venue answered, so the connection itself is healthy
            await self.circuit_breaker.record_success()
            logger.warning("venue_rejected", path=path, status=exc.status_code, code=exc.code, msg=exc.message)
            raise
        except TransientNetworkError as exc:
            await self.circuit_breaker.record_failure()
            logger.error("venue_degraded", path=path, attempts=self.max_retries, error=str(exc))
            raise ServiceDegraded(f"{method} {path} failed after {self.max_retries} attempts") from exc
        except BaseException:
            self.circuit_breaker.release_trial()
            raise
        await self.circuit_breaker.record_success()
        return result

    async def _send_with_retry(
        self,
        method: str,
        path: str,
        params: dict,
        signed: bool,
        accept_codes: frozenset[int],
    ) -> dict:
        result: dict = {}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(TransientNetworkError),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                await self.rate_limiter.check_limit()
                result = await self._send(method, path, params, signed, accept_codes)
        return result

    async def _send(
        self,
        method: str,
        path: str,
        params: dict,
        signed: bool,
        accept_codes: frozenset[int],
    ) -> dict:
        headers = {"Content-Type": "application/json"}
        if method == "GET":
            query = canonical_query(params)
            url = f"{path}?{query}" if query else path
            body = None
            payload = query
        else:
            url = path
            body = json.dumps(params, separators=(",", ":"))
            payload = body
        if signed:
            # Fresh timestamp per attempt so retries stay inside recv_window
            headers.update(auth_headers(self.api_key, self.api_secret, self.recv_window_ms, payload))

        try:
            response = await self._http.request(method, url, content=body, headers=headers)
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{method} {path}: {exc.__class__.__name__} {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(f"{method} {path}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise VenueRejected(response.text[:200], status_code=response.status_code)

        try:
            envelope = VenueEnvelope.model_validate_json(response.content)
        except SchemaError as exc:
            raise ValidationError(f"malformed response envelope from {path}") from exc

        if envelope.retCode in TRANSIENT_RET_CODES:
            raise TransientNetworkError(f"{method} {path}: retCode {envelope.retCode} {envelope.retMsg}")
        if envelope.retCode != 0 and envelope.retCode not in accept_codes:
            raise VenueRejected(envelope.retMsg, status_code=response.status_code, code=envelope.retCode)
        return envelope.result

    @staticmethod
    def _decode(schema: type[SchemaT], data: dict, what: str) -> SchemaT:
        try:
            return schema.model_validate(data)
        except SchemaError as exc:
            logger.warning("venue_schema_error", endpoint=what, errors=exc.error_count())
            raise ValidationError(f"unexpected {what} payload: {exc.errors()[0]['msg']}") from exc

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "venue_retry",
            attempt=retry_state.attempt_number,
            error=str(exc),
        )
