"""Derive open margin positions from balances and trade history."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from src.config.settings import MarginConfig
from src.connectors.margin_venue import BinanceMarginVenue
from src.connectors.market_data import MarketDataProvider
from src.errors import PricingUnavailable, VenuePayloadError, VenueRejection
from src.execution.balances import BalanceAndLiabilityView
from src.models import MarginMode, Position, Trade, split_symbol
from src.risk.conversion import CurrencyConverter
from src.risk.precision import PrecisionFormatter


ZERO = 1e-12


def average_entry_price(trades: Iterable[Trade]) -> float:
    """Weighted average entry of the current holding.

    Trades must be oldest first. Reducing trades keep the average; the
    average restarts whenever the running position crosses zero.
    """
    position = 0.0
    cost = 0.0
    for trade in trades:
        signed = trade.quantity if trade.side == "buy" else -trade.quantity
        new_position = position + signed
        if abs(position) < ZERO or (position > 0) == (signed > 0):
            cost += signed * trade.price
        elif abs(new_position) > ZERO and (new_position > 0) != (position > 0):
            cost = new_position * trade.price
        else:
            cost = cost * (new_position / position)
        position = new_position
        if abs(position) < ZERO:
            position = 0.0
            cost = 0.0
    return cost / position if position else 0.0


class PositionTracker:
    """Open positions as on-demand snapshots; nothing is cached between calls."""

    def __init__(
        self,
        balances: BalanceAndLiabilityView,
        venue: BinanceMarginVenue,
        market_data: MarketDataProvider,
        converter: CurrencyConverter,
        precision: PrecisionFormatter,
        config: MarginConfig,
    ) -> None:
        self.balances = balances
        self.venue = venue
        self.market_data = market_data
        self.converter = converter
        self.precision = precision
        self.config = config
        self.log = structlog.get_logger(__name__)

    async def get_positions(self) -> list[Position]:
        account = await self.balances.snapshot()
        candidates: list[tuple[str, float]] = []
        if account.margin_mode == "isolated":
            for symbol, pair in account.isolated_pairs.items():
                if abs(pair.base.net_asset) > ZERO:
                    candidates.append((symbol, pair.base.net_asset))
        else:
            for asset, balance in account.assets.items():
                if abs(balance.net_asset) <= ZERO or self.converter.is_stable(asset):
                    continue
                candidates.append((f"{asset}/{self.config.settlement_asset}", balance.net_asset))

        positions: list[Position] = []
        for symbol, net_asset in candidates:
            try:
                position = await self._build_position(symbol, net_asset, account.margin_mode)
            except (PricingUnavailable, VenueRejection, VenuePayloadError) as exc:
                self.log.warning("position_snapshot_skipped", symbol=symbol, error=str(exc))
                continue
            if position is not None:
                positions.append(position)
        return positions

    async def get_position(self, symbol: str) -> Position | None:
        base, _ = split_symbol(symbol)
        symbol = symbol.upper()
        account = await self.balances.snapshot(symbol)
        net_asset = account.balance(base, symbol).net_asset
        if abs(net_asset) <= ZERO:
            return None
        return await self._build_position(symbol, net_asset, account.margin_mode)

    async def _build_position(self, symbol: str, net_asset: float, margin_mode: MarginMode) -> Position | None:
        size = abs(net_asset)
        filters = await self.precision.filters(symbol)
        if size < filters.min_qty:
            self.log.debug("position_below_min_qty", symbol=symbol, size=size, min_qty=filters.min_qty)
            return None
        _, quote = split_symbol(symbol)
        side = "long" if net_asset > 0 else "short"

        entry_price = 0.0
        try:
            trades = await self.venue.fetch_my_trades(symbol, self.config.trade_history_limit, margin_mode)
            entry_price = average_entry_price(trades)
        except (VenueRejection, VenuePayloadError) as exc:
            self.log.warning("entry_price_unavailable", symbol=symbol, error=str(exc))

        mark_price = await self.market_data.get_current_price(symbol)
        notional = size * mark_price
        pnl = net_asset * (mark_price - entry_price) if entry_price > 0 else 0.0
        direction = 1 if side == "long" else -1
        pnl_percentage = direction * (mark_price - entry_price) / entry_price * 100 if entry_price > 0 else 0.0

        notional_settlement: float | None = None
        pnl_settlement: float | None = None
        try:
            rate = await self.converter.rate(quote)
            notional_settlement = notional * rate
            pnl_settlement = pnl * rate
        except PricingUnavailable as exc:
            self.log.warning("settlement_conversion_failed", symbol=symbol, quote=quote, error=str(exc))

        return Position(
            symbol=symbol,
            side=side,
            size=size,
            entry_price=entry_price,
            mark_price=mark_price,
            notional=notional,
            pnl=pnl,
            pnl_percentage=pnl_percentage,
            margin_mode=margin_mode,
            notional_settlement=notional_settlement,
            unrealized_pnl_settlement=pnl_settlement,
        )
