"""Attach take-profit / stop-loss protection with native OCO and a two-order fallback."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, Union

import structlog

from src.config.settings import ProtectionConfig
from src.connectors.margin_venue import BinanceMarginVenue, make_client_order_id
from src.errors import ProtectionFailed, ValidationError, VenueRejection
from src.execution.audit import PositionProtectionAuditor
from src.models import MarginMode, OrderIntent, OrderSide, VenueOrder
from src.risk.precision import PrecisionFormatter

if TYPE_CHECKING:
    from src.monitoring.metrics import Metrics


@dataclass(frozen=True)
class NativeOco:
    symbol: str
    order_list_id: str
    legs: tuple[VenueOrder, ...]
    take_profit_price: float
    stop_loss_price: float
    stop_limit_price: float
    kind: Literal["native_oco"] = "native_oco"

    @property
    def status(self) -> str:
        return "native"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "status": self.status,
            "symbol": self.symbol,
            "order_list_id": self.order_list_id,
            "legs": [leg.to_dict() for leg in self.legs],
            "take_profit_price": self.take_profit_price,
            "stop_loss_price": self.stop_loss_price,
            "stop_limit_price": self.stop_limit_price,
        }


@dataclass(frozen=True)
class SeparateOrders:
    symbol: str
    stop_leg: VenueOrder
    limit_leg: VenueOrder | None
    take_profit_price: float
    stop_loss_price: float
    stop_limit_price: float
    oco_error: str
    limit_error: str | None = None
    kind: Literal["separate_orders"] = "separate_orders"

    @property
    def status(self) -> str:
        return "fallback"

    @property
    def stop_order_id(self) -> str:
        return self.stop_leg.order_id

    @property
    def limit_order_id(self) -> str | None:
        return self.limit_leg.order_id if self.limit_leg else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "status": self.status,
            "symbol": self.symbol,
            "stop_order_id": self.stop_order_id,
            "limit_order_id": self.limit_order_id,
            "legs": [leg.to_dict() for leg in (self.stop_leg, self.limit_leg) if leg is not None],
            "take_profit_price": self.take_profit_price,
            "stop_loss_price": self.stop_loss_price,
            "stop_limit_price": self.stop_limit_price,
            "oco_error": self.oco_error,
            "limit_error": self.limit_error,
        }


@dataclass(frozen=True)
class AlreadyProtected:
    symbol: str
    has_stop_loss: bool
    has_take_profit: bool
    orders: tuple[VenueOrder, ...]
    kind: Literal["already_protected"] = "already_protected"

    @property
    def status(self) -> str:
        return "existing"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "status": self.status,
            "symbol": self.symbol,
            "has_stop_loss": self.has_stop_loss,
            "has_take_profit": self.has_take_profit,
            "orders": [order.to_dict() for order in self.orders],
        }


ProtectionOutcome = Union[NativeOco, SeparateOrders, AlreadyProtected]


def derive_stop_limit_price(stop_price: float, exit_side: OrderSide, offset_pct: float) -> float:
    """Limit price ``offset_pct`` worse than the trigger: below for sells, above for buys."""
    factor = offset_pct / 100
    if exit_side == "sell":
        return stop_price * (1 - factor)
    return stop_price * (1 + factor)


def validate_protection_prices(exit_side: OrderSide, take_profit_price: float, stop_loss_price: float) -> None:
    if take_profit_price is None or stop_loss_price is None:
        raise ValidationError("protection requires both take-profit and stop-loss prices")
    if take_profit_price <= 0 or stop_loss_price <= 0:
        raise ValidationError("protection prices must be positive")
    if exit_side == "sell" and take_profit_price <= stop_loss_price:
        raise ValidationError(
            f"sell-side take-profit {take_profit_price} must be above stop-loss {stop_loss_price}"
        )
    if exit_side == "buy" and take_profit_price >= stop_loss_price:
        raise ValidationError(
            f"buy-side take-profit {take_profit_price} must be below stop-loss {stop_loss_price}"
        )


class ProtectionOrchestrator:
    """Place exit protection for a position, idempotently."""

    def __init__(
        self,
        venue: BinanceMarginVenue,
        precision: PrecisionFormatter,
        auditor: PositionProtectionAuditor,
        config: ProtectionConfig,
        margin_mode: MarginMode = "cross",
    ) -> None:
        self.venue = venue
        self.precision = precision
        self.auditor = auditor
        self.config = config
        self.margin_mode = margin_mode
        self._metrics: Metrics | None = None
        self.log = structlog.get_logger(__name__)

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    def _record(self, kind: str) -> None:
        if self._metrics:
            self._metrics.protection_outcomes_total.labels(kind=kind).inc()

    async def attach_protection(
        self,
        symbol: str,
        exit_side: OrderSide,
        quantity: float,
        take_profit_price: float,
        stop_loss_price: float,
        stop_limit_price: float | None = None,
        margin_mode: MarginMode | None = None,
    ) -> ProtectionOutcome:
        symbol = symbol.upper()
        mode = margin_mode or self.margin_mode
        if exit_side not in ("buy", "sell"):
            raise ValidationError(f"exit side must be buy or sell, got '{exit_side}'")
        if quantity is None or quantity <= 0:
            raise ValidationError("protection quantity must be positive")
        validate_protection_prices(exit_side, take_profit_price, stop_loss_price)

        existing = await self.auditor.has_protective_orders(symbol)
        if existing.has_protection:
            self.log.info(
                "protection_already_present",
                symbol=symbol,
                has_stop_loss=existing.has_stop_loss,
                has_take_profit=existing.has_take_profit,
            )
            self._record("already_protected")
            return AlreadyProtected(
                symbol=symbol,
                has_stop_loss=existing.has_stop_loss,
                has_take_profit=existing.has_take_profit,
                orders=existing.orders,
            )

        qty = await self.precision.amount_to_precision(symbol, quantity)
        if float(qty) <= 0:
            raise ValidationError(f"protection quantity {quantity} rounds to zero for {symbol}")
        tp = await self.precision.price_to_precision(symbol, take_profit_price)
        sl = await self.precision.price_to_precision(symbol, stop_loss_price)
        explicit_stop_limit = stop_limit_price is not None
        if stop_limit_price is None:
            stop_limit_price = derive_stop_limit_price(stop_loss_price, exit_side, self.config.stop_limit_offset_pct)
        sl_limit = await self.precision.price_to_precision(symbol, stop_limit_price)

        try:
            order_list = await self.venue.create_oco(symbol, exit_side, qty, tp, sl, sl_limit, mode)
        except VenueRejection as exc:
            oco_error = exc.message
            self.log.warning("oco_rejected_falling_back", symbol=symbol, error=oco_error, code=exc.code)
        else:
            self.log.info(
                "oco_protection_placed",
                symbol=symbol,
                order_list_id=order_list.order_list_id,
                quantity=qty,
                take_profit=tp,
                stop_loss=sl,
                stop_limit=sl_limit,
            )
            self._record("native_oco")
            return NativeOco(
                symbol=symbol,
                order_list_id=order_list.order_list_id,
                legs=order_list.orders,
                take_profit_price=float(tp),
                stop_loss_price=float(sl),
                stop_limit_price=float(sl_limit),
            )

        if not explicit_stop_limit:
            fallback_limit = derive_stop_limit_price(
                stop_loss_price, exit_side, self.config.fallback_stop_limit_offset_pct
            )
            sl_limit = await self.precision.price_to_precision(symbol, fallback_limit)
        stop_intent = OrderIntent(
            symbol=symbol,
            side=exit_side,
            order_type="stop_loss_limit",
            quantity=qty,
            price=sl_limit,
            stop_price=sl,
            reduce_only=True,
            client_order_id=make_client_order_id(symbol, "SL", exit_order=True),
            time_in_force="GTC",
            margin_mode=mode,
        )
        try:
            stop_leg = await self.venue.create_order(stop_intent, leg="protection")
        except VenueRejection as exc:
            self.log.error(
                "protection_failed",
                symbol=symbol,
                oco_error=oco_error,
                stop_error=exc.message,
            )
            self._record("failed")
            raise ProtectionFailed(symbol, oco_error, exc.message) from exc

        limit_intent = OrderIntent(
            symbol=symbol,
            side=exit_side,
            order_type="limit",
            quantity=qty,
            price=tp,
            reduce_only=True,
            client_order_id=make_client_order_id(symbol, "TP", exit_order=True),
            time_in_force="GTC",
            margin_mode=mode,
        )
        limit_leg: VenueOrder | None = None
        limit_error: str | None = None
        try:
            limit_leg = await self.venue.create_order(limit_intent, leg="protection")
        except VenueRejection as exc:
            limit_error = exc.message
            self.log.error("take_profit_leg_failed", symbol=symbol, error=limit_error)

        self.log.info(
            "fallback_protection_placed",
            symbol=symbol,
            stop_order_id=stop_leg.order_id,
            limit_order_id=limit_leg.order_id if limit_leg else None,
        )
        self._record("separate_orders")
        return SeparateOrders(
            symbol=symbol,
            stop_leg=stop_leg,
            limit_leg=limit_leg,
            take_profit_price=float(tp),
            stop_loss_price=float(sl),
            stop_limit_price=float(sl_limit),
            oco_error=oco_error,
            limit_error=limit_error,
        )
