from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Any
from uuid import uuid4

import httpx
import pytest

from src.config.settings import Settings
from src.connectors.margin_venue import BinanceMarginVenue
from src.connectors.market_data import BinanceMarketData
from src.execution.engine import MarginTradingEngine


def _safe_node_name(name: str) -> str:
    # Windows-safe-ish: keep alnum, dash, underscore, dot.
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "test"


@pytest.fixture
def workspace_tmp_path(request: pytest.FixtureRequest) -> Path:
    """Temp dir rooted in the workspace (not system temp)."""
    root = Path.cwd() / ".pytest_tmp_workspace" / _safe_node_name(request.node.name) / uuid4().hex
    root.mkdir(parents=True, exist_ok=True)
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


def venue_error(status_code: int, code: int, msg: str) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://testnet.binance.vision/sapi/v1/margin/order")
    response = httpx.Response(status_code, json={"code": code, "msg": msg}, request=request)
    return httpx.HTTPStatusError(msg, request=request, response=response)


class FakeMarginRest:
    """In-memory stand-in for BinanceMarginRestClient speaking raw Binance payloads."""

    def __init__(self) -> None:
        self.assets: dict[str, dict[str, float]] = {}
        self.margin_level = 999.0
        self.total_asset_btc = 0.0
        self.total_liability_btc = 0.0
        self.total_net_asset_btc = 0.0
        self.isolated: dict[str, dict[str, Any]] = {}
        self.filters: dict[str, list[dict[str, Any]]] = {}
        self.prices: dict[str, float] = {}
        self.klines: dict[str, list[list[Any]]] = {}
        self.trades: dict[str, list[dict[str, Any]]] = {}
        self.orders: dict[str, dict[str, Any]] = {}
        self.open_orders: dict[str, list[dict[str, Any]]] = {}
        self.placed: list[dict[str, Any]] = []
        self.oco_requests: list[dict[str, Any]] = []
        self.borrow_requests: list[tuple[str, str, str | None]] = []
        self.repay_requests: list[tuple[str, str, str | None]] = []
        self.loans: list[dict[str, Any]] = []
        self.fees: dict[str, tuple[str, str]] = {}
        self.failures: dict[str, httpx.HTTPStatusError] = {}
        self.fill_market_orders = True
        self.settle_borrows = True
        self._next_id = 1000

    # Setup helpers

    def set_asset(
        self,
        asset: str,
        free: float,
        borrowed: float = 0.0,
        interest: float = 0.0,
        locked: float = 0.0,
    ) -> None:
        self.assets[asset] = {"free": free, "locked": locked, "borrowed": borrowed, "interest": interest}

    def set_filters(
        self,
        symbol: str,
        step_size: float = 0.00001,
        min_qty: float = 0.00001,
        tick_size: float = 0.01,
        min_notional: float = 5.0,
    ) -> None:
        self.filters[symbol] = [
            {"filterType": "LOT_SIZE", "minQty": str(min_qty), "stepSize": str(step_size)},
            {"filterType": "PRICE_FILTER", "tickSize": str(tick_size)},
            {"filterType": "NOTIONAL", "minNotional": str(min_notional)},
        ]

    def add_open_order(self, symbol: str, **fields: Any) -> dict[str, Any]:
        payload = self._order_payload(symbol, **fields)
        self.open_orders.setdefault(symbol, []).append(payload)
        return payload

    def fail(self, key: str, code: int = -2010, msg: str = "Order would immediately trigger.") -> None:
        self.failures[key] = venue_error(400, code, msg)

    def _check(self, *keys: str) -> None:
        for key in keys:
            if key in self.failures:
                raise self.failures[key]

    def _order_payload(
        self,
        symbol: str,
        side: str = "SELL",
        type: str = "LIMIT",
        origQty: str = "1",
        price: str = "0",
        stopPrice: str | None = None,
        status: str = "NEW",
        clientOrderId: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        self._next_id += 1
        payload = {
            "symbol": symbol,
            "orderId": self._next_id,
            "clientOrderId": clientOrderId or f"web_{self._next_id}",
            "side": side,
            "type": type,
            "origQty": origQty,
            "price": price,
            "status": status,
            "executedQty": "0",
            "cummulativeQuoteQty": "0",
            "orderListId": -1,
            "time": 1_700_000_000_000 + self._next_id,
            **extra,
        }
        if stopPrice is not None:
            payload["stopPrice"] = stopPrice
        self.orders[str(payload["orderId"])] = payload
        return payload

    def _apply_fill(self, symbol: str, side: str, quantity: float, price: float) -> None:
        base = symbol.replace("USDT", "")
        base_row = self.assets.setdefault(base, {"free": 0.0, "locked": 0.0, "borrowed": 0.0, "interest": 0.0})
        quote_row = self.assets.setdefault("USDT", {"free": 0.0, "locked": 0.0, "borrowed": 0.0, "interest": 0.0})
        direction = 1 if side == "BUY" else -1
        base_row["free"] += direction * quantity
        quote_row["free"] -= direction * quantity * price

    # REST surface

    async def get_exchange_info(self, symbol: str | None = None) -> dict[str, Any]:
        self._check("get_exchange_info")
        return {
            "symbols": [
                {"symbol": name, "filters": filters}
                for name, filters in self.filters.items()
                if symbol is None or name == symbol
            ]
        }

    async def get_ticker_price(self, symbol: str) -> dict[str, Any]:
        if symbol not in self.prices:
            raise venue_error(400, -1121, "Invalid symbol.")
        return {"symbol": symbol, "price": str(self.prices[symbol])}

    async def get_klines(self, symbol: str, interval: str, limit: int = 500) -> list[list[Any]]:
        self._check("get_klines")
        return self.klines.get(symbol, [])[-limit:]

    async def get_margin_account(self) -> dict[str, Any]:
        self._check("get_margin_account")
        return {
            "marginLevel": str(self.margin_level),
            "totalAssetOfBtc": str(self.total_asset_btc),
            "totalLiabilityOfBtc": str(self.total_liability_btc),
            "totalNetAssetOfBtc": str(self.total_net_asset_btc),
            "userAssets": [
                {
                    "asset": asset,
                    "free": str(row["free"]),
                    "locked": str(row["locked"]),
                    "borrowed": str(row["borrowed"]),
                    "interest": str(row["interest"]),
                    "netAsset": str(row["free"] + row["locked"] - row["borrowed"] - row["interest"]),
                }
                for asset, row in self.assets.items()
            ],
        }

    async def get_isolated_margin_account(self, symbols: list[str] | None = None) -> dict[str, Any]:
        self._check("get_isolated_margin_account")
        pairs = [pair for name, pair in self.isolated.items() if not symbols or name in symbols]
        return {
            "assets": pairs,
            "totalAssetOfBtc": str(self.total_asset_btc),
            "totalLiabilityOfBtc": str(self.total_liability_btc),
            "totalNetAssetOfBtc": str(self.total_net_asset_btc),
        }

    async def borrow_repay(
        self,
        asset: str,
        amount: str,
        action: str,
        symbol: str | None = None,
    ) -> dict[str, Any]:
        self._check(f"borrow_repay:{action}")
        self._next_id += 1
        row = self.assets.setdefault(asset, {"free": 0.0, "locked": 0.0, "borrowed": 0.0, "interest": 0.0})
        value = float(amount)
        if action == "BORROW":
            self.borrow_requests.append((asset, amount, symbol))
            self.loans.append(
                {
                    "isolatedSymbol": symbol or "",
                    "amount": amount,
                    "asset": asset,
                    "interest": "0",
                    "principal": amount,
                    "status": "CONFIRMED" if self.settle_borrows else "PENDING",
                    "timestamp": 1_700_000_000_000 + self._next_id,
                    "txId": self._next_id,
                }
            )
            if self.settle_borrows:
                row["free"] += value
                row["borrowed"] += value
        else:
            self.repay_requests.append((asset, amount, symbol))
            row["free"] -= value
            paid_interest = min(row["interest"], value)
            row["interest"] -= paid_interest
            row["borrowed"] = max(0.0, row["borrowed"] - (value - paid_interest))
        return {"tranId": self._next_id}

    async def get_my_trades(self, symbol: str, limit: int = 50, isolated: bool = False) -> list[dict[str, Any]]:
        return self.trades.get(symbol, [])[-limit:]

    async def get_borrow_history(
        self, asset: str | None = None, isolated_symbol: str | None = None, size: int = 100
    ) -> dict[str, Any]:
        self._check("get_borrow_history")
        rows = [
            row
            for row in self.loans
            if (asset is None or row["asset"] == asset)
            and (isolated_symbol is None or row["isolatedSymbol"] == isolated_symbol)
        ]
        return {"rows": rows[-size:], "total": len(rows)}

    async def get_trade_fee(self, symbol: str | None = None) -> list[dict[str, Any]]:
        self._check("get_trade_fee")
        return [
            {"symbol": name, "makerCommission": maker, "takerCommission": taker}
            for name, (maker, taker) in self.fees.items()
            if symbol is None or name == symbol
        ]

    async def get_open_orders(self, symbol: str, isolated: bool = False) -> list[dict[str, Any]]:
        self._check("get_open_orders", f"get_open_orders:{symbol}")
        return list(self.open_orders.get(symbol, []))

    async def get_all_orders(self, symbol: str, limit: int = 50, isolated: bool = False) -> list[dict[str, Any]]:
        return [order for order in self.orders.values() if order["symbol"] == symbol][-limit:]

    async def get_order(self, symbol: str, order_id: str, isolated: bool = False) -> dict[str, Any]:
        if str(order_id) not in self.orders:
            raise venue_error(400, -2013, "Order does not exist.")
        return self.orders[str(order_id)]

    async def place_order(self, params: dict[str, Any]) -> dict[str, Any]:
        self._check("place_order", f"place_order:{params['type']}")
        self.placed.append(params)
        symbol = params["symbol"]
        fields = {
            "side": params["side"],
            "type": params["type"],
            "origQty": params["quantity"],
            "price": params.get("price", "0"),
            "stopPrice": params.get("stopPrice"),
            "clientOrderId": params.get("newClientOrderId"),
        }
        if params["type"] == "MARKET" and self.fill_market_orders:
            price = self.prices[symbol]
            quantity = float(params["quantity"])
            payload = self._order_payload(
                symbol,
                status="FILLED",
                executedQty=params["quantity"],
                cummulativeQuoteQty=str(quantity * price),
                **{k: v for k, v in fields.items() if k not in ("price",)},
            )
            self._apply_fill(symbol, params["side"], quantity, price)
            return payload
        payload = self._order_payload(symbol, **fields)
        if params["type"] != "MARKET":
            self.open_orders.setdefault(symbol, []).append(payload)
        return payload

    async def place_oco(self, params: dict[str, Any]) -> dict[str, Any]:
        self._check("place_oco")
        self.oco_requests.append(params)
        symbol = params["symbol"]
        self._next_id += 1
        list_id = self._next_id
        limit_leg = self._order_payload(
            symbol,
            side=params["side"],
            type="LIMIT_MAKER",
            origQty=params["quantity"],
            price=params["price"],
            clientOrderId=params["limitClientOrderId"],
            orderListId=list_id,
        )
        stop_leg = self._order_payload(
            symbol,
            side=params["side"],
            type="STOP_LOSS_LIMIT",
            origQty=params["quantity"],
            price=params["stopLimitPrice"],
            stopPrice=params["stopPrice"],
            clientOrderId=params["stopClientOrderId"],
            orderListId=list_id,
        )
        self.open_orders.setdefault(symbol, []).extend([stop_leg, limit_leg])
        return {"orderListId": list_id, "orderReports": [stop_leg, limit_leg]}

    async def cancel_order(self, symbol: str, order_id: str, isolated: bool = False) -> dict[str, Any]:
        remaining = []
        cancelled: dict[str, Any] | None = None
        for order in self.open_orders.get(symbol, []):
            if str(order["orderId"]) == str(order_id):
                cancelled = {**order, "status": "CANCELED"}
            else:
                remaining.append(order)
        if cancelled is None:
            raise venue_error(400, -2011, "Unknown order sent.")
        self.open_orders[symbol] = remaining
        return cancelled

    async def cancel_open_orders(self, symbol: str, isolated: bool = False) -> list[dict[str, Any]]:
        orders = self.open_orders.pop(symbol, [])
        if not orders:
            raise venue_error(400, -2011, "Unknown order sent.")
        return [{**order, "status": "CANCELED"} for order in orders]


def make_settings(**overrides: Any) -> Settings:
    data: dict[str, Any] = {
        "run": {"mode": "testnet", "enable_trading": True},
        "binance_testnet_api_key": "k",
        "binance_testnet_secret_key": "s",
        "margin": {"borrow_settle_interval_sec": 0.0},
        "protection": {"fill_poll_interval_sec": 0.0},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return Settings(**data, _env_file=None)


@pytest.fixture
def rest() -> FakeMarginRest:
    fake = FakeMarginRest()
    fake.set_filters("BTCUSDT", step_size=0.00001, min_qty=0.00001, tick_size=0.01, min_notional=5.0)
    fake.set_filters("ETHUSDT", step_size=0.0001, min_qty=0.0001, tick_size=0.01, min_notional=5.0)
    fake.prices.update({"BTCUSDT": 50_000.0, "ETHUSDT": 2_500.0, "ETHBTC": 0.05})
    fake.set_asset("USDT", free=1_000.0)
    fake.total_asset_btc = 0.02
    fake.total_net_asset_btc = 0.02
    return fake


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def venue(rest: FakeMarginRest) -> BinanceMarginVenue:
    return BinanceMarginVenue(rest)  # type: ignore[arg-type]


@pytest.fixture
def engine(settings: Settings, venue: BinanceMarginVenue) -> MarginTradingEngine:
    return MarginTradingEngine(settings, venue, BinanceMarketData(venue))
