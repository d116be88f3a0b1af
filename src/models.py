"""Shared data models.

Venue payloads are parsed into these records at the connector boundary;
a missing required field raises ``VenuePayloadError`` instead of defaulting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from src.errors import ValidationError, VenuePayloadError


PositionSide = Literal["long", "short"]
OrderSide = Literal["buy", "sell"]
MarginMode = Literal["cross", "isolated"]
ExitPlanStatus = Literal["created", "valid", "invalidated"]

# Client order ids of exit orders carry this prefix; margin order payloads
# have no reduce-only flag so the tag is how exits are recognised later.
EXIT_ORDER_PREFIX = "X_"
ENTRY_ORDER_PREFIX = "T_"

STOP_ORDER_TYPES = frozenset({"stop_loss", "stop_loss_limit", "stop_market", "stop", "stop_limit"})
LIMIT_ORDER_TYPES = frozenset({"limit", "limit_maker"})

CONDITION_TYPES = frozenset(
    {"price_below", "price_above", "macd_decrease", "rsi_below", "rsi_above", "volume_spike", "custom"}
)


def split_symbol(symbol: str) -> tuple[str, str]:
    """Split a unified ``BASE/QUOTE`` symbol."""
    parts = symbol.upper().split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValidationError(f"symbol must look like BASE/QUOTE, got '{symbol}'")
    return parts[0], parts[1]


def venue_symbol(symbol: str) -> str:
    base, quote = split_symbol(symbol)
    return f"{base}{quote}"


def exit_side_for(position_side: PositionSide) -> OrderSide:
    return "sell" if position_side == "long" else "buy"


def is_exit_client_order_id(client_order_id: str | None) -> bool:
    return bool(client_order_id) and client_order_id.startswith(EXIT_ORDER_PREFIX)


def _require(payload: dict[str, Any], key: str, record: str) -> Any:
    if not isinstance(payload, dict) or key not in payload or payload[key] is None:
        raise VenuePayloadError(record, key, payload)
    return payload[key]


def _float(payload: dict[str, Any], key: str, record: str) -> float:
    value = _require(payload, key, record)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise VenuePayloadError(record, key, payload) from exc


def _optional_float(payload: dict[str, Any], key: str) -> float | None:
    value = payload.get(key)
    if value in (None, ""):
        return None
    number = float(value)
    return number if number != 0 else None


@dataclass(frozen=True)
class AssetBalance:
    asset: str
    free: float
    locked: float
    borrowed: float
    interest: float
    net_asset: float

    @property
    def total(self) -> float:
        return self.free + self.locked

    @property
    def liability(self) -> float:
        return self.borrowed + self.interest

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AssetBalance:
        record = "AssetBalance"
        return cls(
            asset=str(_require(payload, "asset", record)).upper(),
            free=_float(payload, "free", record),
            locked=_float(payload, "locked", record),
            borrowed=_float(payload, "borrowed", record),
            interest=_float(payload, "interest", record),
            net_asset=_float(payload, "netAsset", record),
        )

    @classmethod
    def empty(cls, asset: str) -> AssetBalance:
        return cls(asset=asset.upper(), free=0.0, locked=0.0, borrowed=0.0, interest=0.0, net_asset=0.0)


@dataclass(frozen=True)
class IsolatedPair:
    symbol: str
    base: AssetBalance
    quote: AssetBalance
    margin_level: float
    index_price: float

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> IsolatedPair:
        record = "IsolatedPair"
        base = AssetBalance.from_payload(_require(payload, "baseAsset", record))
        quote = AssetBalance.from_payload(_require(payload, "quoteAsset", record))
        return cls(
            symbol=f"{base.asset}/{quote.asset}",
            base=base,
            quote=quote,
            margin_level=_float(payload, "marginLevel", record),
            index_price=_float(payload, "indexPrice", record),
        )


@dataclass(frozen=True)
class MarginAccount:
    margin_mode: MarginMode
    margin_level: float
    total_asset_btc: float
    total_liability_btc: float
    total_net_asset_btc: float
    assets: dict[str, AssetBalance] = field(default_factory=dict)
    isolated_pairs: dict[str, IsolatedPair] = field(default_factory=dict)

    def balance(self, asset: str, symbol: str | None = None) -> AssetBalance:
        """Balance of ``asset``; isolated accounts resolve it inside ``symbol``'s pair."""
        asset = asset.upper()
        if self.margin_mode == "isolated" and symbol:
            pair = self.isolated_pairs.get(symbol.upper())
            if pair is None:
                return AssetBalance.empty(asset)
            if pair.base.asset == asset:
                return pair.base
            if pair.quote.asset == asset:
                return pair.quote
            return AssetBalance.empty(asset)
        return self.assets.get(asset, AssetBalance.empty(asset))

    @classmethod
    def from_cross_payload(cls, payload: dict[str, Any]) -> MarginAccount:
        record = "MarginAccount"
        assets = [AssetBalance.from_payload(item) for item in _require(payload, "userAssets", record)]
        return cls(
            margin_mode="cross",
            margin_level=_float(payload, "marginLevel", record),
            total_asset_btc=_float(payload, "totalAssetOfBtc", record),
            total_liability_btc=_float(payload, "totalLiabilityOfBtc", record),
            total_net_asset_btc=_float(payload, "totalNetAssetOfBtc", record),
            assets={item.asset: item for item in assets},
        )

    @classmethod
    def from_isolated_payload(cls, payload: dict[str, Any]) -> MarginAccount:
        record = "IsolatedMarginAccount"
        pairs = [IsolatedPair.from_payload(item) for item in _require(payload, "assets", record)]
        total_liability = _float(payload, "totalLiabilityOfBtc", record)
        total_asset = _float(payload, "totalAssetOfBtc", record)
        levels = [pair.margin_level for pair in pairs if pair.base.liability or pair.quote.liability]
        margin_level = min(levels) if levels else 999.0
        return cls(
            margin_mode="isolated",
            margin_level=margin_level,
            total_asset_btc=total_asset,
            total_liability_btc=total_liability,
            total_net_asset_btc=_float(payload, "totalNetAssetOfBtc", record),
            isolated_pairs={pair.symbol: pair for pair in pairs},
        )


@dataclass(frozen=True)
class OrderIntent:
    symbol: str
    side: OrderSide
    order_type: str
    quantity: str
    price: str | None = None
    stop_price: str | None = None
    reduce_only: bool = False
    client_order_id: str | None = None
    time_in_force: str | None = None
    margin_mode: MarginMode = "cross"
    # Trailing distance in basis points; the venue tracks the trigger itself.
    trailing_delta: int | None = None


@dataclass(frozen=True)
class VenueOrder:
    symbol: str
    order_id: str
    client_order_id: str | None
    side: OrderSide
    order_type: str
    quantity: float
    price: float | None
    stop_price: float | None
    status: str
    reduce_only: bool = False
    executed_quantity: float = 0.0
    cumulative_quote: float = 0.0
    order_list_id: str | None = None
    timestamp: int | None = None

    @property
    def is_stop(self) -> bool:
        return self.order_type in STOP_ORDER_TYPES

    @property
    def is_plain_limit(self) -> bool:
        return self.order_type in LIMIT_ORDER_TYPES

    @property
    def is_filled(self) -> bool:
        return self.status == "filled"

    @property
    def average_price(self) -> float | None:
        if self.executed_quantity > 0 and self.cumulative_quote > 0:
            return self.cumulative_quote / self.executed_quantity
        return self.price

    @classmethod
    def from_payload(cls, payload: dict[str, Any], symbol: str) -> VenueOrder:
        record = "VenueOrder"
        client_order_id = payload.get("clientOrderId")
        order_list_id = payload.get("orderListId")
        reduce_only = payload.get("reduceOnly")
        if reduce_only is None:
            reduce_only = is_exit_client_order_id(client_order_id)
        return cls(
            symbol=symbol,
            order_id=str(_require(payload, "orderId", record)),
            client_order_id=client_order_id,
            side=str(_require(payload, "side", record)).lower(),
            order_type=str(_require(payload, "type", record)).lower(),
            quantity=_float(payload, "origQty", record),
            price=_optional_float(payload, "price"),
            stop_price=_optional_float(payload, "stopPrice"),
            status=str(_require(payload, "status", record)).lower(),
            reduce_only=bool(reduce_only),
            executed_quantity=float(payload.get("executedQty") or 0.0),
            cumulative_quote=float(payload.get("cummulativeQuoteQty") or 0.0),
            order_list_id=str(order_list_id) if order_list_id not in (None, -1, "-1") else None,
            timestamp=payload.get("updateTime") or payload.get("transactTime") or payload.get("time"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "side": self.side,
            "type": self.order_type,
            "quantity": self.quantity,
            "price": self.price,
            "stop_price": self.stop_price,
            "status": self.status,
            "reduce_only": self.reduce_only,
            "executed_quantity": self.executed_quantity,
            "average_price": self.average_price,
            "order_list_id": self.order_list_id,
        }


@dataclass(frozen=True)
class OcoOrderList:
    symbol: str
    order_list_id: str
    orders: tuple[VenueOrder, ...]

    @classmethod
    def from_payload(cls, payload: dict[str, Any], symbol: str) -> OcoOrderList:
        record = "OcoOrderList"
        reports = payload.get("orderReports") or _require(payload, "orders", record)
        orders: list[VenueOrder] = []
        for report in reports:
            # Plain "orders" entries only carry ids; keep them as pending legs.
            if "type" not in report:
                report = {
                    "side": payload.get("side", "SELL"),
                    "type": "UNKNOWN",
                    "origQty": 0,
                    "status": "NEW",
                    **report,
                }
            orders.append(VenueOrder.from_payload(report, symbol))
        return cls(
            symbol=symbol,
            order_list_id=str(_require(payload, "orderListId", record)),
            orders=tuple(orders),
        )


@dataclass(frozen=True)
class Trade:
    symbol: str
    side: OrderSide
    quantity: float
    quote_quantity: float
    price: float
    time: int

    @classmethod
    def from_payload(cls, payload: dict[str, Any], symbol: str) -> Trade:
        record = "Trade"
        quantity = _float(payload, "qty", record)
        price = _float(payload, "price", record)
        quote_quantity = payload.get("quoteQty")
        return cls(
            symbol=symbol,
            side="buy" if _require(payload, "isBuyer", record) else "sell",
            quantity=quantity,
            quote_quantity=float(quote_quantity) if quote_quantity is not None else quantity * price,
            price=price,
            time=int(_require(payload, "time", record)),
        )


@dataclass(frozen=True)
class LoanRecord:
    """One borrow from the venue loan history."""

    asset: str
    amount: float
    status: str
    timestamp: int
    tx_id: str
    isolated_symbol: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LoanRecord:
        record = "LoanRecord"
        isolated = payload.get("isolatedSymbol")
        return cls(
            asset=str(_require(payload, "asset", record)),
            amount=_float(payload, "principal" if "principal" in payload else "amount", record),
            status=str(payload.get("status") or "").lower(),
            timestamp=int(_require(payload, "timestamp", record)),
            tx_id=str(_require(payload, "txId", record)),
            isolated_symbol=str(isolated) if isolated else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset": self.asset,
            "amount": self.amount,
            "status": self.status,
            "timestamp": self.timestamp,
            "tx_id": self.tx_id,
            "isolated_symbol": self.isolated_symbol,
        }


@dataclass(frozen=True)
class TradingFee:
    symbol: str
    maker: float
    taker: float

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TradingFee:
        record = "TradingFee"
        return cls(
            symbol=str(_require(payload, "symbol", record)),
            maker=_float(payload, "makerCommission", record),
            taker=_float(payload, "takerCommission", record),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"symbol": self.symbol, "maker": self.maker, "taker": self.taker}


@dataclass(frozen=True)
class Position:
    """Open margin position derived from balances and trade history."""

    symbol: str
    side: PositionSide
    size: float
    entry_price: float
    mark_price: float
    notional: float
    pnl: float
    pnl_percentage: float
    margin_mode: MarginMode = "cross"
    notional_settlement: float | None = None
    unrealized_pnl_settlement: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "size": self.size,
            "entry_price": self.entry_price,
            "mark_price": self.mark_price,
            "notional": self.notional,
            "pnl": self.pnl,
            "pnl_percentage": self.pnl_percentage,
            "margin_mode": self.margin_mode,
            "notional_settlement": self.notional_settlement,
            "unrealized_pnl_settlement": self.unrealized_pnl_settlement,
        }


@dataclass(frozen=True)
class InvalidationCondition:
    type: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "description": self.description, "parameters": dict(self.parameters)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InvalidationCondition:
        if "type" not in data:
            raise ValidationError("invalidation condition requires a type")
        return cls(
            type=str(data["type"]),
            description=str(data.get("description", "")),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass(frozen=True)
class ExitPlan:
    symbol: str
    side: PositionSide
    entry_price: float
    target_price: float
    stop_price: float
    invalidation_conditions: tuple[InvalidationCondition, ...]
    price_at_creation: float
    target_pnl: float
    stop_pnl: float
    risk_reward_ratio: float
    status: ExitPlanStatus = "created"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    checked_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "entry_price": self.entry_price,
            "target_price": self.target_price,
            "stop_price": self.stop_price,
            "invalidation_conditions": [c.to_dict() for c in self.invalidation_conditions],
            "price_at_creation": self.price_at_creation,
            "target_pnl": self.target_pnl,
            "stop_pnl": self.stop_pnl,
            "risk_reward_ratio": self.risk_reward_ratio,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExitPlan:
        checked_at = data.get("checked_at")
        return cls(
            symbol=data["symbol"],
            side=data["side"],
            entry_price=float(data["entry_price"]),
            target_price=float(data["target_price"]),
            stop_price=float(data["stop_price"]),
            invalidation_conditions=tuple(
                InvalidationCondition.from_dict(item) for item in data.get("invalidation_conditions", [])
            ),
            price_at_creation=float(data["price_at_creation"]),
            target_pnl=float(data["target_pnl"]),
            stop_pnl=float(data["stop_pnl"]),
            risk_reward_ratio=float(data["risk_reward_ratio"]),
            status=data.get("status", "created"),
            created_at=datetime.fromisoformat(data["created_at"]),
            checked_at=datetime.fromisoformat(checked_at) if checked_at else None,
        )
