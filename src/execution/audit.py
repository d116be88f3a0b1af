"""Detect which positions lack protective exit orders."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

import structlog

from src.connectors.margin_venue import BinanceMarginVenue
from src.errors import PricingUnavailable, VenuePayloadError, VenueRejection
from src.execution.positions import PositionTracker
from src.models import Position, VenueOrder


OrderIntentKind = Literal["stop_loss", "take_profit"]


def classify_order(order: VenueOrder, position: Position | None) -> OrderIntentKind | None:
    """Infer the exit intent of an open order.

    Only reduce-only orders count. A stop-triggered order is a stop-loss; a
    plain limit priced beyond the mark in the profitable direction is a
    take-profit. Without a position, or when the price is missing, a limit
    order cannot be classified and is ignored, so this can under-report.
    """
    if not order.reduce_only:
        return None
    if order.is_stop:
        return "stop_loss"
    if not order.is_plain_limit or position is None or order.price is None:
        return None
    if position.side == "long" and order.price > position.mark_price:
        return "take_profit"
    if position.side == "short" and order.price < position.mark_price:
        return "take_profit"
    return None


@dataclass(frozen=True)
class ProtectionStatus:
    symbol: str
    has_stop_loss: bool
    has_take_profit: bool
    orders: tuple[VenueOrder, ...] = ()

    @property
    def has_protection(self) -> bool:
        return self.has_stop_loss or self.has_take_profit

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "has_stop_loss": self.has_stop_loss,
            "has_take_profit": self.has_take_profit,
            "has_protection": self.has_protection,
            "orders": [order.to_dict() for order in self.orders],
        }


@dataclass(frozen=True)
class UnprotectedPosition:
    position: Position
    protection: ProtectionStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "protection": self.protection.to_dict(),
        }


class PositionProtectionAuditor:
    """Compare open positions against their open reduce-only orders."""

    def __init__(self, venue: BinanceMarginVenue, positions: PositionTracker) -> None:
        self.venue = venue
        self.positions = positions
        self.log = structlog.get_logger(__name__)

    async def has_protective_orders(self, symbol: str, position: Position | None = None) -> ProtectionStatus:
        symbol = symbol.upper()
        if position is None:
            position = await self.positions.get_position(symbol)
        margin_mode = position.margin_mode if position else self.positions.balances.margin_mode
        orders = await self.venue.fetch_open_orders(symbol, margin_mode)
        protective: list[VenueOrder] = []
        has_stop_loss = False
        has_take_profit = False
        for order in orders:
            kind = classify_order(order, position)
            if kind == "stop_loss":
                has_stop_loss = True
            elif kind == "take_profit":
                has_take_profit = True
            else:
                continue
            protective.append(order)
        return ProtectionStatus(
            symbol=symbol,
            has_stop_loss=has_stop_loss,
            has_take_profit=has_take_profit,
            orders=tuple(protective),
        )

    async def get_unprotected_positions(self) -> list[UnprotectedPosition]:
        unprotected: list[UnprotectedPosition] = []
        for position in await self.positions.get_positions():
            try:
                status = await self.has_protective_orders(position.symbol, position)
            except (VenueRejection, VenuePayloadError, PricingUnavailable) as exc:
                # Unknown is not the same as unprotected.
                self.log.warning("protection_check_failed", symbol=position.symbol, error=str(exc))
                continue
            if status.has_protection:
                continue
            unprotected.append(UnprotectedPosition(position=position, protection=status))
        self.log.info("unprotected_positions_scanned", count=len(unprotected))
        return unprotected
