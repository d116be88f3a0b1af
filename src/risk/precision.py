"""Quantity and price precision for venue submission."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP
from typing import Protocol

import structlog


@dataclass(frozen=True)
class SymbolFilters:
    min_notional: float
    min_qty: float
    step_size: float
    tick_size: float


# Used when the instrument lookup fails: 6 quantity decimals, 2 price decimals.
DEFAULT_FILTERS = SymbolFilters(min_notional=0.0, min_qty=0.0, step_size=0.000001, tick_size=0.01)


class FiltersSource(Protocol):
    async def fetch_symbol_filters(self, symbol: str) -> SymbolFilters: ...


def _quantize(value: float, step: float, rounding: str) -> Decimal:
    quant = Decimal(str(step))
    return (Decimal(str(value)) / quant).to_integral_value(rounding=rounding) * quant


def floor_to_step(value: float, step: float) -> float:
    """Truncate toward zero onto the step grid."""
    if step <= 0:
        return value
    return float(_quantize(value, step, ROUND_DOWN))


def round_to_tick(value: float, tick: float) -> float:
    """Round to the nearest tick."""
    if tick <= 0:
        return value
    return float(_quantize(value, tick, ROUND_HALF_UP))


def quantize_to_step(value: float, step: float) -> float:
    """Snap onto the step grid with banker's rounding, absorbing float division noise."""
    if step <= 0:
        return value
    return float(_quantize(value, step, ROUND_HALF_EVEN))


def format_decimal(value: float | Decimal) -> str:
    """Render without exponent or trailing zeros."""
    text = format(Decimal(str(value)).normalize(), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


class PrecisionFormatter:
    """Format quantities and prices to instrument precision, caching filters per symbol."""

    def __init__(self, source: FiltersSource) -> None:
        self.source = source
        self._cache: dict[str, SymbolFilters] = {}
        self.log = structlog.get_logger(__name__)

    async def filters(self, symbol: str) -> SymbolFilters:
        cached = self._cache.get(symbol)
        if cached is not None:
            return cached
        try:
            filters = await self.source.fetch_symbol_filters(symbol)
        except Exception as exc:
            self.log.warning("symbol_filters_unavailable", symbol=symbol, error=str(exc))
            return DEFAULT_FILTERS
        self._cache[symbol] = filters
        return filters

    async def amount_to_precision(self, symbol: str, quantity: float) -> str:
        filters = await self.filters(symbol)
        return format_decimal(floor_to_step(quantity, filters.step_size))

    async def price_to_precision(self, symbol: str, price: float) -> str:
        filters = await self.filters(symbol)
        return format_decimal(round_to_tick(price, filters.tick_size))

    async def floor_quantity(self, symbol: str, quantity: float) -> float:
        filters = await self.filters(symbol)
        return floor_to_step(quantity, filters.step_size)
