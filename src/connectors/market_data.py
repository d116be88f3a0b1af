"""Market data collaborator: live prices and OHLCV candles."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

import pandas as pd
import structlog

from src.connectors.margin_venue import BinanceMarginVenue
from src.errors import PricingUnavailable, VenueRejection


log = structlog.get_logger(__name__)


class MarketDataProvider(Protocol):
    async def get_current_price(self, symbol: str) -> float: ...

    async def get_candles(self, symbol: str, timeframe: str, count: int) -> pd.DataFrame: ...


def klines_to_frame(klines: list[list[Any]], closed_only: bool = True) -> pd.DataFrame:
    """Convert raw kline rows into an OHLCV frame indexed by close time."""
    rows = []
    if not isinstance(klines, list):
        log.warning("klines_invalid_type", type=type(klines).__name__)
        return pd.DataFrame()
    for kline in klines:
        try:
            if len(kline) < 6:
                raise IndexError("kline missing required fields")
            rows.append(
                {
                    "open_time": kline[0],
                    "open": float(kline[1]),
                    "high": float(kline[2]),
                    "low": float(kline[3]),
                    "close": float(kline[4]),
                    "volume": float(kline[5]),
                    "close_time": kline[6] if len(kline) > 6 else kline[0],
                }
            )
        except (TypeError, ValueError, IndexError) as exc:
            log.warning("kline_parse_failed", error=str(exc))
            continue
    if not rows:
        return pd.DataFrame()
    df = pd.DataFrame(rows)
    df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
    df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
    if closed_only:
        df = df[df["close_time"] <= datetime.now(timezone.utc)]
    if df.empty:
        return df
    return df.set_index("close_time")


class BinanceMarketData:
    """Prices and candles from the Binance spot REST API."""

    def __init__(self, venue: BinanceMarginVenue) -> None:
        self.venue = venue

    async def get_current_price(self, symbol: str) -> float:
        try:
            price = await self.venue.fetch_ticker_price(symbol)
        except (VenueRejection, KeyError, TypeError, ValueError) as exc:
            raise PricingUnavailable(f"no price for {symbol}: {exc}") from exc
        if price <= 0:
            raise PricingUnavailable(f"non-positive price for {symbol}: {price}")
        return price

    async def get_candles(self, symbol: str, timeframe: str, count: int) -> pd.DataFrame:
        klines = await self.venue.fetch_klines(symbol, timeframe, count)
        return klines_to_frame(klines)
