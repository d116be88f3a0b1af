"""Borrow-aware leveraged order sizing."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

import structlog

from src.config.settings import MarginConfig
from src.connectors.margin_venue import BinanceMarginVenue
from src.connectors.market_data import MarketDataProvider
from src.errors import (
    BorrowCapacityUnknown,
    CapacityExceeded,
    PricingUnavailable,
    ValidationError,
    VenuePayloadError,
    VenueRejection,
)
from src.execution.balances import BalanceAndLiabilityView
from src.models import MarginMode, OrderSide, split_symbol
from src.risk.borrow import BorrowCapacityCalculator
from src.risk.precision import PrecisionFormatter, floor_to_step, format_decimal, quantize_to_step


BORROW_STEP = 0.00000001
# Share of a borrow that must show up in free balance before the entry goes out.
SETTLEMENT_TOLERANCE = 0.999


@dataclass(frozen=True)
class LeveragedEntry:
    symbol: str
    side: OrderSide
    requested_quantity: float
    final_quantity: float
    borrowed_amount: float
    borrowed_asset: str
    adjusted: bool
    price: float
    leverage: float
    buffer: float
    usable_balance: float
    needed_borrow: float
    borrow_capacity: float | None
    settled: bool = False
    borrow_tran_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "original_amount": self.requested_quantity,
            "final_quantity": self.final_quantity,
            "borrowed_amount": self.borrowed_amount,
            "borrowed_asset": self.borrowed_asset,
            "adjusted": self.adjusted,
            "price": self.price,
            "leverage": self.leverage,
            "buffer": self.buffer,
            "usable_balance": self.usable_balance,
            "needed_borrow": self.needed_borrow,
            "borrow_capacity": self.borrow_capacity,
            "settled": self.settled,
        }


class LeveragedOrderSizer:
    """Size a leveraged entry against free balance and borrow capacity, then borrow."""

    def __init__(
        self,
        balances: BalanceAndLiabilityView,
        capacity: BorrowCapacityCalculator,
        market_data: MarketDataProvider,
        precision: PrecisionFormatter,
        venue: BinanceMarginVenue,
        config: MarginConfig,
    ) -> None:
        self.balances = balances
        self.capacity = capacity
        self.market_data = market_data
        self.precision = precision
        self.venue = venue
        self.config = config
        self.log = structlog.get_logger(__name__)

    def protective_buffer(self, free: float) -> float:
        return max(0.0, min(self.config.protective_buffer_max, free * self.config.protective_buffer_pct / 100))

    async def plan_entry(
        self,
        symbol: str,
        side: OrderSide,
        desired_exposure: float,
        leverage: float,
        margin_safety_level: float | None = None,
        price: float | None = None,
        margin_mode: MarginMode | None = None,
    ) -> LeveragedEntry:
        """Compute the entry without touching the venue's loan book."""
        if side not in ("buy", "sell"):
            raise ValidationError(f"side must be buy or sell, got '{side}'")
        if desired_exposure <= 0:
            raise ValidationError("desired exposure must be positive")
        if leverage < 1 or leverage > self.config.max_leverage:
            raise ValidationError(f"leverage must be between 1 and {self.config.max_leverage}, got {leverage}")
        mode = margin_mode or self.balances.margin_mode
        base, quote = split_symbol(symbol)

        if price is None:
            price = await self.market_data.get_current_price(symbol)
        if price is None or price <= 0:
            raise PricingUnavailable(f"no usable price for {symbol}")

        borrow_asset = quote if side == "buy" else base
        try:
            free = await self.balances.free_balance(borrow_asset, symbol, mode)
        except (VenueRejection, VenuePayloadError) as exc:
            raise BorrowCapacityUnknown(f"free {borrow_asset} balance unavailable: {exc}") from exc

        buffer = self.protective_buffer(free)
        usable = max(0.0, free - buffer)
        unit_cost = price if side == "buy" else 1.0
        total_required = desired_exposure * unit_cost * leverage
        needed_borrow = max(0.0, total_required - usable)

        filters = await self.precision.filters(symbol)
        capacity: float | None = None
        adjusted = False
        if needed_borrow > 0:
            result = await self.capacity.max_borrowable(
                borrow_asset,
                symbol=symbol if mode == "isolated" else None,
                margin_mode=mode,
                margin_safety_level=margin_safety_level,
            )
            capacity = quantize_to_step(result.max_borrow_asset, BORROW_STEP)

        if capacity is not None and needed_borrow > capacity:
            adjusted = True
            borrowed = floor_to_step(capacity, BORROW_STEP)
            final_quantity = floor_to_step((usable + borrowed) / (unit_cost * leverage), filters.step_size)
            if final_quantity <= 0 or final_quantity < filters.min_qty or final_quantity * price < filters.min_notional:
                raise CapacityExceeded(
                    f"borrow capacity {capacity:.8f} {borrow_asset} cannot fund a minimum {symbol} order"
                )
            self.log.warning(
                "leveraged_entry_adjusted",
                symbol=symbol,
                side=side,
                requested_quantity=desired_exposure,
                adjusted_quantity=final_quantity,
                needed_borrow=needed_borrow,
                borrow_capacity=capacity,
            )
        else:
            borrowed = needed_borrow
            final_quantity = floor_to_step(desired_exposure, filters.step_size)
            if final_quantity <= 0 or final_quantity < filters.min_qty:
                raise ValidationError(
                    f"{symbol} quantity {desired_exposure} is below the instrument minimum {filters.min_qty}"
                )

        return LeveragedEntry(
            symbol=symbol,
            side=side,
            requested_quantity=desired_exposure,
            final_quantity=final_quantity,
            borrowed_amount=borrowed,
            borrowed_asset=borrow_asset,
            adjusted=adjusted,
            price=price,
            leverage=leverage,
            buffer=buffer,
            usable_balance=usable,
            needed_borrow=needed_borrow,
            borrow_capacity=capacity,
        )

    async def request_leveraged_entry(
        self,
        symbol: str,
        side: OrderSide,
        desired_exposure: float,
        leverage: float,
        margin_safety_level: float = 1.5,
        price: float | None = None,
        margin_mode: MarginMode | None = None,
    ) -> LeveragedEntry:
        """Size the entry and borrow what it needs; returns once the loan is settled."""
        mode = margin_mode or self.balances.margin_mode
        entry = await self.plan_entry(
            symbol,
            side,
            desired_exposure,
            leverage,
            margin_safety_level=margin_safety_level,
            price=price,
            margin_mode=mode,
        )
        if entry.borrowed_amount <= 0:
            return replace(entry, borrowed_amount=0.0, settled=True)

        amount = format_decimal(floor_to_step(entry.borrowed_amount, BORROW_STEP))
        isolated_symbol = symbol if mode == "isolated" else None
        free_before = await self.balances.free_balance(entry.borrowed_asset, symbol, mode)
        tran_id = await self.venue.borrow(entry.borrowed_asset, amount, isolated_symbol)
        self.log.info(
            "margin_borrow_submitted",
            symbol=symbol,
            asset=entry.borrowed_asset,
            amount=amount,
            tran_id=tran_id,
        )
        settled = await self.balances.wait_for_free_balance(
            entry.borrowed_asset,
            free_before + float(amount) * SETTLEMENT_TOLERANCE,
            attempts=self.config.borrow_settle_attempts,
            interval_sec=self.config.borrow_settle_interval_sec,
            symbol=symbol,
            margin_mode=mode,
        )
        if not settled:
            raise VenueRejection(
                f"borrow of {amount} {entry.borrowed_asset} (tran {tran_id}) not reflected in balance",
                leg="borrow",
            )
        return replace(entry, borrowed_amount=float(amount), settled=True, borrow_tran_id=tran_id)
