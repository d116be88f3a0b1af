"""Typed margin venue adapter over the Binance REST client.

Every payload leaving this module is a record from ``src.models``; HTTP
failures are translated into ``VenueRejection``.
"""

from __future__ import annotations

import time
from typing import Any
from uuid import uuid4

import httpx
import structlog

from src.connectors.rest_client import BinanceMarginRestClient
from src.errors import NotFound, VenueRejection
from src.models import (
    ENTRY_ORDER_PREFIX,
    EXIT_ORDER_PREFIX,
    LoanRecord,
    MarginAccount,
    MarginMode,
    OcoOrderList,
    OrderIntent,
    OrderSide,
    Trade,
    TradingFee,
    VenueOrder,
    venue_symbol,
)
from src.risk.precision import SymbolFilters
from src.utils.binance import parse_symbol_filters


PRICED_TYPES = {"limit", "limit_maker", "stop_loss_limit", "take_profit_limit"}
TIME_IN_FORCE_TYPES = {"limit", "stop_loss_limit", "take_profit_limit"}
STOP_TRIGGER_TYPES = {"stop_loss", "stop_loss_limit", "take_profit", "take_profit_limit"}


def make_client_order_id(symbol: str, tag: str, exit_order: bool = False) -> str:
    prefix = EXIT_ORDER_PREFIX if exit_order else ENTRY_ORDER_PREFIX
    timestamp = str(int(time.time() * 1000))[-10:]
    nonce = uuid4().hex[:4]
    return f"{prefix}{venue_symbol(symbol)}_{tag}_{timestamp}_{nonce}"[:36]


def _rejection(exc: Exception, leg: str) -> VenueRejection:
    if isinstance(exc, httpx.HTTPStatusError):
        code = None
        message = exc.response.text
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code")
            message = body.get("msg", message)
        return VenueRejection(message, leg=leg, code=code, status_code=exc.response.status_code)
    return VenueRejection(f"transport error: {exc}", leg=leg)


class BinanceMarginVenue:
    """Margin venue operations returning structured records."""

    def __init__(self, rest: BinanceMarginRestClient) -> None:
        self.rest = rest
        self.log = structlog.get_logger(__name__)

    async def _call(self, leg: str, func, *args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            rejection = _rejection(exc, leg)
            self.log.warning(
                "venue_request_rejected",
                leg=leg,
                operation=getattr(func, "__name__", str(func)),
                code=rejection.code,
                error=rejection.message,
            )
            raise rejection from exc

    async def fetch_account(
        self,
        margin_mode: MarginMode = "cross",
        symbols: list[str] | None = None,
    ) -> MarginAccount:
        if margin_mode == "isolated":
            venue_symbols = [venue_symbol(symbol) for symbol in symbols] if symbols else None
            payload = await self._call("query", self.rest.get_isolated_margin_account, venue_symbols)
            return MarginAccount.from_isolated_payload(payload)
        payload = await self._call("query", self.rest.get_margin_account)
        return MarginAccount.from_cross_payload(payload)

    async def fetch_symbol_filters(self, symbol: str) -> SymbolFilters:
        payload = await self._call("query", self.rest.get_exchange_info, venue_symbol(symbol))
        for item in payload.get("symbols", []):
            if item.get("symbol") == venue_symbol(symbol):
                return parse_symbol_filters(item.get("filters", []))
        raise NotFound(f"instrument {symbol} not listed")

    async def fetch_ticker_price(self, symbol: str) -> float:
        payload = await self._call("query", self.rest.get_ticker_price, venue_symbol(symbol))
        return float(payload["price"])

    async def fetch_klines(self, symbol: str, timeframe: str, limit: int) -> list[list[Any]]:
        return await self._call("query", self.rest.get_klines, venue_symbol(symbol), timeframe, limit)

    async def fetch_open_orders(self, symbol: str, margin_mode: MarginMode = "cross") -> list[VenueOrder]:
        payload = await self._call(
            "query", self.rest.get_open_orders, venue_symbol(symbol), margin_mode == "isolated"
        )
        return [VenueOrder.from_payload(item, symbol) for item in payload]

    async def fetch_order(self, symbol: str, order_id: str, margin_mode: MarginMode = "cross") -> VenueOrder:
        payload = await self._call(
            "query", self.rest.get_order, venue_symbol(symbol), order_id, margin_mode == "isolated"
        )
        return VenueOrder.from_payload(payload, symbol)

    async def fetch_order_history(
        self,
        symbol: str,
        limit: int = 50,
        margin_mode: MarginMode = "cross",
    ) -> list[VenueOrder]:
        payload = await self._call(
            "query", self.rest.get_all_orders, venue_symbol(symbol), limit, margin_mode == "isolated"
        )
        return [VenueOrder.from_payload(item, symbol) for item in payload]

    async def fetch_my_trades(
        self,
        symbol: str,
        limit: int = 50,
        margin_mode: MarginMode = "cross",
    ) -> list[Trade]:
        payload = await self._call(
            "query", self.rest.get_my_trades, venue_symbol(symbol), limit, margin_mode == "isolated"
        )
        trades = [Trade.from_payload(item, symbol) for item in payload]
        return sorted(trades, key=lambda trade: trade.time)

    async def fetch_borrow_history(
        self, asset: str | None = None, symbol: str | None = None, limit: int = 100
    ) -> list[LoanRecord]:
        payload = await self._call(
            "query",
            self.rest.get_borrow_history,
            asset.upper() if asset else None,
            venue_symbol(symbol) if symbol else None,
            limit,
        )
        rows = payload.get("rows") if isinstance(payload, dict) else None
        records = [LoanRecord.from_payload(item) for item in rows or []]
        return sorted(records, key=lambda record: record.timestamp, reverse=True)

    async def fetch_trading_fees(self, symbol: str | None = None) -> list[TradingFee]:
        payload = await self._call("query", self.rest.get_trade_fee, venue_symbol(symbol) if symbol else None)
        return [TradingFee.from_payload(item) for item in payload or []]

    async def create_order(self, intent: OrderIntent, leg: str = "entry") -> VenueOrder:
        order_type = intent.order_type.lower()
        params: dict[str, Any] = {
            "symbol": venue_symbol(intent.symbol),
            "side": intent.side.upper(),
            "type": order_type.upper(),
            "quantity": intent.quantity,
            "isIsolated": "TRUE" if intent.margin_mode == "isolated" else "FALSE",
            "sideEffectType": "NO_SIDE_EFFECT",
            "newOrderRespType": "FULL",
            "newClientOrderId": intent.client_order_id
            or make_client_order_id(intent.symbol, order_type[:3].upper(), intent.reduce_only),
        }
        if order_type in PRICED_TYPES:
            if intent.price is None:
                raise VenueRejection(f"{order_type} order requires a price", leg=leg)
            params["price"] = intent.price
        if order_type in TIME_IN_FORCE_TYPES:
            params["timeInForce"] = intent.time_in_force or "GTC"
        if intent.trailing_delta is not None:
            params["trailingDelta"] = intent.trailing_delta
        if order_type in STOP_TRIGGER_TYPES:
            if intent.stop_price is not None:
                params["stopPrice"] = intent.stop_price
            elif intent.trailing_delta is None:
                raise VenueRejection(f"{order_type} order requires a stop price", leg=leg)
        payload = await self._call(leg, self.rest.place_order, params)
        return VenueOrder.from_payload(payload, intent.symbol)

    async def create_oco(
        self,
        symbol: str,
        side: OrderSide,
        quantity: str,
        take_profit_price: str,
        stop_price: str,
        stop_limit_price: str,
        margin_mode: MarginMode = "cross",
    ) -> OcoOrderList:
        params = {
            "symbol": venue_symbol(symbol),
            "side": side.upper(),
            "quantity": quantity,
            "price": take_profit_price,
            "stopPrice": stop_price,
            "stopLimitPrice": stop_limit_price,
            "stopLimitTimeInForce": "GTC",
            "isIsolated": "TRUE" if margin_mode == "isolated" else "FALSE",
            "sideEffectType": "NO_SIDE_EFFECT",
            "listClientOrderId": make_client_order_id(symbol, "OCO", exit_order=True),
            "limitClientOrderId": make_client_order_id(symbol, "TP", exit_order=True),
            "stopClientOrderId": make_client_order_id(symbol, "SL", exit_order=True),
        }
        payload = await self._call("protection", self.rest.place_oco, params)
        return OcoOrderList.from_payload(payload, symbol)

    async def cancel_order(self, symbol: str, order_id: str, margin_mode: MarginMode = "cross") -> VenueOrder:
        payload = await self._call(
            "cancel", self.rest.cancel_order, venue_symbol(symbol), order_id, margin_mode == "isolated"
        )
        return VenueOrder.from_payload(payload, symbol)

    async def cancel_all_orders(self, symbol: str, margin_mode: MarginMode = "cross") -> int:
        payload = await self._call(
            "cancel", self.rest.cancel_open_orders, venue_symbol(symbol), margin_mode == "isolated"
        )
        return len(payload) if isinstance(payload, list) else 0

    async def borrow(self, asset: str, amount: str, symbol: str | None = None) -> str:
        payload = await self._call(
            "borrow",
            self.rest.borrow_repay,
            asset.upper(),
            amount,
            "BORROW",
            venue_symbol(symbol) if symbol else None,
        )
        return str(payload.get("tranId", ""))

    async def repay(self, asset: str, amount: str, symbol: str | None = None) -> str:
        payload = await self._call(
            "repay",
            self.rest.borrow_repay,
            asset.upper(),
            amount,
            "REPAY",
            venue_symbol(symbol) if symbol else None,
        )
        return str(payload.get("tranId", ""))
