import asyncio

import pytest

from src.config.settings import MarginConfig
from src.connectors.margin_venue import BinanceMarginVenue
from src.connectors.market_data import BinanceMarketData
from src.errors import BorrowCapacityUnknown
from src.execution.balances import BalanceAndLiabilityView
from src.risk.borrow import BorrowCapacityCalculator
from src.risk.conversion import CurrencyConverter
from tests.conftest import FakeMarginRest


def _calculator(rest: FakeMarginRest, mode: str = "cross") -> BorrowCapacityCalculator:
    venue = BinanceMarginVenue(rest)  # type: ignore[arg-type]
    balances = BalanceAndLiabilityView(venue, mode, "USDT")
    converter = CurrencyConverter(BinanceMarketData(venue), "USDT")
    return BorrowCapacityCalculator(balances, converter, MarginConfig())


def test_no_debt_allows_twice_net_assets(rest: FakeMarginRest) -> None:
    rest.total_net_asset_btc = 0.02
    rest.total_liability_btc = 0.0

    capacity = asyncio.run(_calculator(rest).max_borrowable("USDT"))

    assert capacity.reason == "no_existing_debt"
    assert capacity.max_borrow_btc == pytest.approx(0.04)
    assert capacity.max_borrow_asset == pytest.approx(2_000.0)


def test_existing_debt_is_bounded_by_safety_level(rest: FakeMarginRest) -> None:
    rest.margin_level = 3.0
    rest.total_net_asset_btc = 0.3
    rest.total_liability_btc = 0.1

    capacity = asyncio.run(_calculator(rest).max_borrowable("BTC", margin_safety_level=1.5))

    assert capacity.reason == "within_safety_level"
    assert capacity.max_borrow_btc == pytest.approx(0.1)
    assert capacity.max_borrow_asset == pytest.approx(0.1)


def test_margin_level_at_safety_blocks_borrowing(rest: FakeMarginRest) -> None:
    rest.margin_level = 1.5
    rest.total_net_asset_btc = 0.3
    rest.total_liability_btc = 0.2

    capacity = asyncio.run(_calculator(rest).max_borrowable("USDT", margin_safety_level=1.5))

    assert capacity.max_borrow_asset == 0.0
    assert capacity.reason == "margin_level_at_or_below_safety"


def test_unpriceable_asset_raises_capacity_unknown(rest: FakeMarginRest) -> None:
    with pytest.raises(BorrowCapacityUnknown):
        asyncio.run(_calculator(rest).max_borrowable("DOGE"))


def test_isolated_pair_capacity_uses_pair_leverage(rest: FakeMarginRest) -> None:
    rest.isolated["BTCUSDT"] = {
        "symbol": "BTCUSDT",
        "marginLevel": "999",
        "indexPrice": "50000",
        "baseAsset": {
            "asset": "BTC", "free": "0", "locked": "0", "borrowed": "0", "interest": "0", "netAsset": "0",
        },
        "quoteAsset": {
            "asset": "USDT", "free": "500", "locked": "0", "borrowed": "0", "interest": "0", "netAsset": "500",
        },
    }

    capacity = asyncio.run(_calculator(rest, "isolated").max_borrowable("USDT", symbol="BTC/USDT"))

    assert capacity.reason == "isolated_leverage_limit"
    assert capacity.max_borrow_asset == pytest.approx(1_000.0)


def test_isolated_pair_not_enabled(rest: FakeMarginRest) -> None:
    capacity = asyncio.run(_calculator(rest, "isolated").max_borrowable("USDT", symbol="ETH/USDT"))

    assert capacity.max_borrow_asset == 0.0
    assert capacity.reason == "isolated_pair_not_enabled"
