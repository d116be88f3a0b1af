"""Maximum additional borrow under the margin safety level."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from src.config.settings import MarginConfig
from src.errors import BorrowCapacityUnknown, PricingUnavailable, ValidationError, VenuePayloadError, VenueRejection
from src.execution.balances import BalanceAndLiabilityView
from src.models import MarginAccount, MarginMode
from src.risk.conversion import CurrencyConverter
from src.risk.engine import borrowing_allowed


@dataclass(frozen=True)
class BorrowCapacity:
    asset: str
    symbol: str | None
    margin_mode: MarginMode
    max_borrow_asset: float
    max_borrow_btc: float | None
    asset_price_in_btc: float | None
    margin_level: float
    total_net_asset_btc: float
    total_liability_btc: float
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset": self.asset,
            "symbol": self.symbol,
            "margin_mode": self.margin_mode,
            "max_borrowable": self.max_borrow_asset,
            "max_borrowable_btc": self.max_borrow_btc,
            "asset_price_in_btc": self.asset_price_in_btc,
            "margin_level": self.margin_level,
            "total_net_asset_btc": self.total_net_asset_btc,
            "total_liability_btc": self.total_liability_btc,
            "reason": self.reason,
        }


class BorrowCapacityCalculator:
    """Compute how much more of an asset can be borrowed without breaching the safety level."""

    def __init__(
        self,
        balances: BalanceAndLiabilityView,
        converter: CurrencyConverter,
        config: MarginConfig,
    ) -> None:
        self.balances = balances
        self.converter = converter
        self.config = config
        self.log = structlog.get_logger(__name__)

    async def max_borrowable(
        self,
        asset: str,
        symbol: str | None = None,
        margin_mode: MarginMode | None = None,
        margin_safety_level: float | None = None,
    ) -> BorrowCapacity:
        mode = margin_mode or self.balances.margin_mode
        safety = margin_safety_level or self.config.margin_safety_level
        if mode == "isolated" and not symbol:
            raise ValidationError("isolated margin borrow capacity requires a symbol")
        try:
            account = await self.balances.snapshot(symbol, mode)
        except (VenueRejection, VenuePayloadError) as exc:
            raise BorrowCapacityUnknown(f"account state unavailable: {exc}") from exc
        if mode == "isolated":
            capacity = self._isolated_capacity(account, asset.upper(), symbol.upper(), safety)
        else:
            capacity = await self._cross_capacity(account, asset.upper(), safety)
        self.log.info(
            "borrow_capacity_computed",
            asset=capacity.asset,
            symbol=symbol,
            margin_mode=mode,
            max_borrowable=capacity.max_borrow_asset,
            margin_level=capacity.margin_level,
            reason=capacity.reason,
        )
        return capacity

    async def _cross_capacity(self, account: MarginAccount, asset: str, safety: float) -> BorrowCapacity:
        net = account.total_net_asset_btc
        liability = account.total_liability_btc
        if liability < self.config.liability_epsilon_btc:
            capacity_btc = max(0.0, self.config.no_debt_borrow_multiplier * net)
            reason = "no_existing_debt"
        elif not borrowing_allowed(account.margin_level, safety):
            capacity_btc = 0.0
            reason = "margin_level_at_or_below_safety"
        else:
            capacity_btc = max(0.0, net / safety - liability)
            reason = "within_safety_level"

        try:
            price_in_btc = await self.converter.asset_price_in_btc(asset)
        except PricingUnavailable as exc:
            raise BorrowCapacityUnknown(f"cannot price {asset} in BTC: {exc}") from exc
        if price_in_btc <= 0:
            raise BorrowCapacityUnknown(f"non-positive BTC price for {asset}")

        return BorrowCapacity(
            asset=asset,
            symbol=None,
            margin_mode="cross",
            max_borrow_asset=capacity_btc / price_in_btc,
            max_borrow_btc=capacity_btc,
            asset_price_in_btc=price_in_btc,
            margin_level=account.margin_level,
            total_net_asset_btc=net,
            total_liability_btc=liability,
            reason=reason,
        )

    def _isolated_capacity(
        self,
        account: MarginAccount,
        asset: str,
        symbol: str,
        safety: float,
    ) -> BorrowCapacity:
        pair = account.isolated_pairs.get(symbol)
        if pair is None:
            return BorrowCapacity(
                asset=asset,
                symbol=symbol,
                margin_mode="isolated",
                max_borrow_asset=0.0,
                max_borrow_btc=None,
                asset_price_in_btc=None,
                margin_level=0.0,
                total_net_asset_btc=account.total_net_asset_btc,
                total_liability_btc=account.total_liability_btc,
                reason="isolated_pair_not_enabled",
            )
        if asset not in {pair.base.asset, pair.quote.asset}:
            raise ValidationError(f"{asset} is not part of isolated pair {symbol}")
        if pair.index_price <= 0:
            raise BorrowCapacityUnknown(f"isolated pair {symbol} has no index price")

        # Quote-denominated accounting for the pair.
        collateral = pair.base.net_asset * pair.index_price + pair.quote.net_asset
        borrowed = pair.base.liability * pair.index_price + pair.quote.liability
        if borrowed > 0 and not borrowing_allowed(pair.margin_level, safety):
            capacity_quote = 0.0
            reason = "margin_level_at_or_below_safety"
        else:
            capacity_quote = max(0.0, collateral * (self.config.isolated_max_leverage - 1) - borrowed)
            reason = "isolated_leverage_limit"
        capacity_asset = capacity_quote / pair.index_price if asset == pair.base.asset else capacity_quote
        return BorrowCapacity(
            asset=asset,
            symbol=symbol,
            margin_mode="isolated",
            max_borrow_asset=capacity_asset,
            max_borrow_btc=None,
            asset_price_in_btc=None,
            margin_level=pair.margin_level,
            total_net_asset_btc=account.total_net_asset_btc,
            total_liability_btc=account.total_liability_btc,
            reason=reason,
        )
