"""Balance and liability view over the margin account."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.connectors.margin_venue import BinanceMarginVenue
from src.models import AssetBalance, MarginAccount, MarginMode


class BalanceAndLiabilityView:
    """Read-only account queries used by sizing, risk and the tool surface."""

    def __init__(
        self,
        venue: BinanceMarginVenue,
        margin_mode: MarginMode = "cross",
        settlement_asset: str = "USDT",
    ) -> None:
        self.venue = venue
        self.margin_mode = margin_mode
        self.settlement_asset = settlement_asset.upper()
        self.log = structlog.get_logger(__name__)

    async def snapshot(self, symbol: str | None = None, margin_mode: MarginMode | None = None) -> MarginAccount:
        mode = margin_mode or self.margin_mode
        symbols = [symbol] if symbol and mode == "isolated" else None
        return await self.venue.fetch_account(mode, symbols)

    async def balance(
        self,
        asset: str,
        symbol: str | None = None,
        margin_mode: MarginMode | None = None,
    ) -> AssetBalance:
        account = await self.snapshot(symbol, margin_mode)
        return account.balance(asset, symbol)

    async def free_balance(
        self,
        asset: str,
        symbol: str | None = None,
        margin_mode: MarginMode | None = None,
    ) -> float:
        return (await self.balance(asset, symbol, margin_mode)).free

    async def wait_for_free_balance(
        self,
        asset: str,
        minimum: float,
        attempts: int,
        interval_sec: float,
        symbol: str | None = None,
        margin_mode: MarginMode | None = None,
    ) -> bool:
        """Poll until ``asset``'s free balance reaches ``minimum``; bounded by ``attempts``."""
        for attempt in range(attempts):
            free = await self.free_balance(asset, symbol, margin_mode)
            if free >= minimum:
                return True
            self.log.info(
                "balance_settlement_pending",
                asset=asset,
                free=free,
                expected=minimum,
                attempt=attempt + 1,
            )
            await asyncio.sleep(interval_sec)
        return False

    async def settlement_balance(self) -> dict[str, Any]:
        balance = await self.balance(self.settlement_asset)
        return {
            "asset": self.settlement_asset,
            "total": balance.total,
            "free": balance.free,
            "used": balance.locked,
            "borrowed": balance.borrowed,
            "interest": balance.interest,
            "net_available": balance.free - balance.liability,
        }

    async def current_liabilities(self) -> list[dict[str, Any]]:
        account = await self.snapshot()
        if account.margin_mode == "isolated":
            balances = [
                item
                for pair in account.isolated_pairs.values()
                for item in (pair.base, pair.quote)
            ]
        else:
            balances = list(account.assets.values())
        return [
            {
                "asset": item.asset,
                "borrowed": item.borrowed,
                "interest": item.interest,
                "total": item.liability,
            }
            for item in balances
            if item.borrowed > 0
        ]

    async def liability_for_asset(self, asset: str, symbol: str | None = None) -> dict[str, Any]:
        balance = await self.balance(asset, symbol)
        return {
            "asset": balance.asset,
            "borrowed": balance.borrowed,
            "interest": balance.interest,
            "total": balance.liability,
        }

    async def margin_level(self) -> dict[str, float]:
        account = await self.snapshot()
        return {
            "margin_level": account.margin_level,
            "total_asset_btc": account.total_asset_btc,
            "total_liability_btc": account.total_liability_btc,
            "total_net_asset_btc": account.total_net_asset_btc,
        }
