import asyncio

from src.risk.precision import (
    DEFAULT_FILTERS,
    PrecisionFormatter,
    SymbolFilters,
    floor_to_step,
    format_decimal,
    quantize_to_step,
    round_to_tick,
)
from src.utils.binance import parse_symbol_filters


class _Filters:
    def __init__(self, filters: SymbolFilters | None = None) -> None:
        self.filters = filters
        self.calls = 0

    async def fetch_symbol_filters(self, symbol: str) -> SymbolFilters:
        self.calls += 1
        if self.filters is None:
            raise RuntimeError("exchange info down")
        return self.filters


def test_floor_to_step_truncates() -> None:
    assert floor_to_step(0.0019999, 0.001) == 0.001
    assert floor_to_step(1.23456, 0.01) == 1.23
    assert floor_to_step(5.0, 0.001) == 5.0


def test_round_to_tick_rounds_half_up() -> None:
    assert round_to_tick(101.235, 0.01) == 101.24
    assert round_to_tick(101.234, 0.01) == 101.23


def test_quantize_to_step_absorbs_division_noise() -> None:
    # 0.04 BTC of capacity priced at 2e-5 BTC per USDT.
    assert quantize_to_step(0.04 / (1 / 50_000), 0.00000001) == 2_000.0
    assert quantize_to_step(0.125, 0.01) == 0.12
    assert quantize_to_step(0.135, 0.01) == 0.14


def test_format_decimal_has_no_exponent() -> None:
    assert format_decimal(0.00001) == "0.00001"
    assert format_decimal(100.0) == "100"
    assert format_decimal(0.0) == "0"


def test_parse_symbol_filters_reads_spot_filters() -> None:
    filters = parse_symbol_filters(
        [
            {"filterType": "PRICE_FILTER", "tickSize": "0.01000000"},
            {"filterType": "LOT_SIZE", "minQty": "0.00001000", "stepSize": "0.00001000"},
            {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
        ]
    )
    assert filters == SymbolFilters(min_notional=5.0, min_qty=0.00001, step_size=0.00001, tick_size=0.01)


def test_formatter_caches_filters_per_symbol() -> None:
    source = _Filters(SymbolFilters(min_notional=5.0, min_qty=0.001, step_size=0.001, tick_size=0.1))
    formatter = PrecisionFormatter(source)

    assert asyncio.run(formatter.amount_to_precision("BTC/USDT", 0.0019999)) == "0.001"
    assert asyncio.run(formatter.price_to_precision("BTC/USDT", 50123.46)) == "50123.5"
    assert source.calls == 1


def test_formatter_falls_back_to_default_precision() -> None:
    formatter = PrecisionFormatter(_Filters(None))

    assert asyncio.run(formatter.filters("XYZ/USDT")) == DEFAULT_FILTERS
    assert asyncio.run(formatter.amount_to_precision("XYZ/USDT", 1.23456789)) == "1.234567"
    assert asyncio.run(formatter.price_to_precision("XYZ/USDT", 1.23456789)) == "1.23"
