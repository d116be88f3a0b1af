"""Binance margin connectors module."""

from src.connectors.margin_venue import BinanceMarginVenue
from src.connectors.market_data import BinanceMarketData, MarketDataProvider
from src.connectors.rest_client import BinanceMarginRestClient

__all__ = [
    "BinanceMarginRestClient",
    "BinanceMarginVenue",
    "BinanceMarketData",
    "MarketDataProvider",
]
