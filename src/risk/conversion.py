"""Currency conversion between assets, BTC and the settlement asset."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from src.connectors.market_data import MarketDataProvider
from src.errors import PricingUnavailable


class CurrencyConverter:
    """Single place for every unit conversion the engine performs."""

    def __init__(
        self,
        market_data: MarketDataProvider,
        settlement_asset: str = "USDT",
        stable_assets: Iterable[str] = ("USDT", "USDC", "BUSD", "USD"),
        reference_asset: str = "BTC",
    ) -> None:
        self.market_data = market_data
        self.settlement_asset = settlement_asset.upper()
        self.stable_assets = {asset.upper() for asset in stable_assets} | {self.settlement_asset}
        self.reference_asset = reference_asset.upper()
        self.log = structlog.get_logger(__name__)

    def is_stable(self, asset: str) -> bool:
        return asset.upper() in self.stable_assets

    async def rate(self, asset: str) -> float:
        """Price of one unit of ``asset`` in the settlement asset."""
        asset = asset.upper()
        if self.is_stable(asset):
            return 1.0
        try:
            return await self.market_data.get_current_price(f"{asset}/{self.settlement_asset}")
        except PricingUnavailable as direct_exc:
            if asset == self.reference_asset:
                raise
            self.log.debug("direct_rate_unavailable", asset=asset, error=str(direct_exc))
        try:
            in_reference = await self.market_data.get_current_price(f"{asset}/{self.reference_asset}")
            reference_rate = await self.market_data.get_current_price(
                f"{self.reference_asset}/{self.settlement_asset}"
            )
        except PricingUnavailable as exc:
            raise PricingUnavailable(f"no conversion path from {asset} to {self.settlement_asset}") from exc
        return in_reference * reference_rate

    async def to_settlement(self, amount: float, asset: str) -> float:
        if amount == 0:
            return 0.0
        return amount * await self.rate(asset)

    async def asset_price_in_btc(self, asset: str) -> float:
        asset = asset.upper()
        if asset == self.reference_asset:
            return 1.0
        reference_rate = await self.rate(self.reference_asset)
        if reference_rate <= 0:
            raise PricingUnavailable(f"invalid {self.reference_asset} rate {reference_rate}")
        return await self.rate(asset) / reference_rate

    async def btc_to_asset(self, amount_btc: float, asset: str) -> float:
        if amount_btc == 0:
            return 0.0
        price_in_btc = await self.asset_price_in_btc(asset)
        if price_in_btc <= 0:
            raise PricingUnavailable(f"invalid {asset} price in {self.reference_asset}")
        return amount_btc / price_in_btc
