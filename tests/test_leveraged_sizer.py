import asyncio

import pytest

from src.errors import CapacityExceeded, ValidationError, VenueRejection
from src.execution.engine import MarginTradingEngine


def test_full_quantity_when_borrow_within_capacity(engine: MarginTradingEngine, rest) -> None:
    entry = asyncio.run(
        engine.sizer.request_leveraged_entry("BTC/USDT", "buy", 0.01, leverage=2, margin_safety_level=1.5)
    )

    # 0.01 * 50000 * 2 = 1000 needed, 990 usable after the 10 USDT buffer.
    assert entry.final_quantity == pytest.approx(0.01)
    assert entry.adjusted is False
    assert entry.buffer == pytest.approx(10.0)
    assert entry.borrowed_amount == pytest.approx(10.0)
    assert entry.borrowed_asset == "USDT"
    assert entry.settled is True
    assert rest.borrow_requests == [("USDT", "10", None)]


def test_quantity_shrinks_to_borrow_capacity(engine: MarginTradingEngine, rest) -> None:
    entry = asyncio.run(engine.sizer.request_leveraged_entry("BTC/USDT", "buy", 0.05, leverage=2))

    assert entry.adjusted is True
    assert entry.borrow_capacity == pytest.approx(2_000.0)
    assert entry.borrowed_amount == pytest.approx(2_000.0)
    # (990 usable + 2000 borrowed) / (50000 * 2)
    assert entry.final_quantity == pytest.approx(0.0299)
    assert entry.to_dict()["original_amount"] == 0.05


def test_capacity_too_small_for_minimum_order(engine: MarginTradingEngine, rest) -> None:
    rest.set_asset("USDT", free=5.0)
    rest.total_net_asset_btc = 0.0000001

    with pytest.raises(CapacityExceeded):
        asyncio.run(engine.sizer.request_leveraged_entry("BTC/USDT", "buy", 0.05, leverage=3))
    assert rest.borrow_requests == []


def test_short_entry_borrows_base_asset(engine: MarginTradingEngine, rest) -> None:
    entry = asyncio.run(engine.sizer.request_leveraged_entry("BTC/USDT", "sell", 0.01, leverage=1))

    assert entry.borrowed_asset == "BTC"
    assert entry.borrowed_amount == pytest.approx(0.01)
    assert entry.final_quantity == pytest.approx(0.01)
    assert rest.borrow_requests == [("BTC", "0.01", None)]


def test_plan_entry_does_not_borrow(engine: MarginTradingEngine, rest) -> None:
    entry = asyncio.run(engine.sizer.plan_entry("BTC/USDT", "buy", 0.01, leverage=2))

    assert entry.needed_borrow == pytest.approx(10.0)
    assert entry.settled is False
    assert rest.borrow_requests == []


def test_leverage_above_maximum_is_rejected(engine: MarginTradingEngine) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(engine.sizer.plan_entry("BTC/USDT", "buy", 0.01, leverage=20))


def test_unsettled_borrow_fails_on_borrow_leg(engine: MarginTradingEngine, rest) -> None:
    rest.settle_borrows = False

    with pytest.raises(VenueRejection) as excinfo:
        asyncio.run(engine.sizer.request_leveraged_entry("BTC/USDT", "buy", 0.01, leverage=2))
    assert excinfo.value.leg == "borrow"


def test_capped_borrow_is_exact_on_the_borrow_grid(engine: MarginTradingEngine, rest) -> None:
    entry = asyncio.run(engine.sizer.plan_entry("BTC/USDT", "buy", 0.05, leverage=2))

    assert entry.borrow_capacity == 2_000.0
    assert entry.borrowed_amount == 2_000.0
    assert entry.final_quantity == 0.0299
    assert entry.to_dict()["borrowed_amount"] == 2_000.0
