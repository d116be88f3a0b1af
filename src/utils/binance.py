"""Binance filter helpers."""

from __future__ import annotations

from typing import Any

from src.risk.precision import DEFAULT_FILTERS, SymbolFilters


def parse_symbol_filters(filters: list[dict[str, Any]]) -> SymbolFilters:
    min_notional = DEFAULT_FILTERS.min_notional
    min_qty = DEFAULT_FILTERS.min_qty
    step_size = DEFAULT_FILTERS.step_size
    tick_size = DEFAULT_FILTERS.tick_size
    for flt in filters:
        ftype = flt.get("filterType")
        if ftype in {"MIN_NOTIONAL", "NOTIONAL"}:
            min_notional = float(flt.get("minNotional", flt.get("notional", 0)))
        elif ftype == "LOT_SIZE":
            min_qty = float(flt.get("minQty", min_qty))
            step = float(flt.get("stepSize", step_size))
            if step > 0:
                step_size = step
        elif ftype == "PRICE_FILTER":
            tick = float(flt.get("tickSize", tick_size))
            if tick > 0:
                tick_size = tick
    return SymbolFilters(
        min_notional=min_notional,
        min_qty=min_qty,
        step_size=step_size,
        tick_size=tick_size,
    )
