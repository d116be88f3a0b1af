import asyncio

import pytest
from prometheus_client import CollectorRegistry

from src.errors import ProtectionFailed, ValidationError
from src.execution.engine import MarginTradingEngine
from src.execution.protection import (
    AlreadyProtected,
    NativeOco,
    SeparateOrders,
    derive_stop_limit_price,
)
from src.monitoring.metrics import Metrics


def _long_btc(rest) -> None:
    rest.set_asset("BTC", free=0.01)


def test_native_oco_is_preferred(engine: MarginTradingEngine, rest) -> None:
    _long_btc(rest)

    outcome = asyncio.run(
        engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 55_000.0, 48_000.0)
    )

    assert isinstance(outcome, NativeOco)
    assert outcome.status == "native"
    assert len(outcome.legs) == 2
    request = rest.oco_requests[0]
    assert request["symbol"] == "BTCUSDT"
    assert request["side"] == "SELL"
    assert request["quantity"] == "0.01"
    assert request["price"] == "55000"
    assert request["stopPrice"] == "48000"
    assert request["stopLimitPrice"] == "47520"
    assert rest.placed == []


def test_second_attach_is_a_no_op(engine: MarginTradingEngine, rest) -> None:
    _long_btc(rest)
    asyncio.run(engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 55_000.0, 48_000.0))

    outcome = asyncio.run(
        engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 56_000.0, 47_000.0)
    )

    assert isinstance(outcome, AlreadyProtected)
    assert outcome.has_stop_loss is True
    assert len(rest.oco_requests) == 1
    assert rest.placed == []


def test_fallback_places_stop_then_take_profit(engine: MarginTradingEngine, rest) -> None:
    _long_btc(rest)
    rest.fail("place_oco", code=-1013, msg="OCO not supported for this symbol.")

    outcome = asyncio.run(
        engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 55_000.0, 48_000.0)
    )

    assert isinstance(outcome, SeparateOrders)
    assert outcome.status == "fallback"
    assert outcome.oco_error == "OCO not supported for this symbol."
    stop, take_profit = rest.placed
    assert stop["type"] == "STOP_LOSS_LIMIT"
    assert stop["stopPrice"] == "48000"
    # Fallback limit sits 5% through the trigger.
    assert stop["price"] == "45600"
    assert take_profit["type"] == "LIMIT"
    assert take_profit["price"] == "55000"
    assert outcome.stop_order_id and outcome.limit_order_id


def test_fallback_keeps_stop_when_take_profit_leg_fails(engine: MarginTradingEngine, rest) -> None:
    _long_btc(rest)
    rest.fail("place_oco")
    rest.fail("place_order:LIMIT", msg="Filter failure: PERCENT_PRICE_BY_SIDE")

    outcome = asyncio.run(
        engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 55_000.0, 48_000.0)
    )

    assert isinstance(outcome, SeparateOrders)
    assert outcome.limit_leg is None
    assert outcome.limit_error == "Filter failure: PERCENT_PRICE_BY_SIDE"


def test_failed_stop_leg_raises_protection_failed(engine: MarginTradingEngine, rest) -> None:
    _long_btc(rest)
    rest.fail("place_oco")
    rest.fail("place_order:STOP_LOSS_LIMIT", msg="Stop price would trigger immediately.")

    with pytest.raises(ProtectionFailed) as excinfo:
        asyncio.run(engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 55_000.0, 48_000.0))
    assert excinfo.value.leg == "protection"
    assert excinfo.value.stop_error == "Stop price would trigger immediately."


def test_inverted_prices_rejected_before_venue_call(engine: MarginTradingEngine, rest) -> None:
    _long_btc(rest)

    with pytest.raises(ValidationError):
        asyncio.run(engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 47_000.0, 48_000.0))
    assert rest.oco_requests == []


def test_short_protection_uses_buy_side(engine: MarginTradingEngine, rest) -> None:
    rest.set_asset("BTC", free=0.0, borrowed=0.01)

    outcome = asyncio.run(
        engine.protection.attach_protection("BTC/USDT", "buy", 0.01, 45_000.0, 52_000.0)
    )

    assert isinstance(outcome, NativeOco)
    assert rest.oco_requests[0]["side"] == "BUY"
    assert rest.oco_requests[0]["stopLimitPrice"] == "52520"


def test_derive_stop_limit_price_moves_through_trigger() -> None:
    assert derive_stop_limit_price(100.0, "sell", 5) == pytest.approx(95.0)
    assert derive_stop_limit_price(100.0, "buy", 5) == pytest.approx(105.0)


def test_outcomes_are_counted(engine: MarginTradingEngine, rest) -> None:
    _long_btc(rest)
    registry = CollectorRegistry()
    engine.set_metrics(Metrics(registry=registry))

    asyncio.run(engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 55_000.0, 48_000.0))
    asyncio.run(engine.protection.attach_protection("BTC/USDT", "sell", 0.01, 55_000.0, 48_000.0))

    assert registry.get_sample_value("protection_outcomes_total", {"kind": "native_oco"}) == 1.0
    assert registry.get_sample_value("protection_outcomes_total", {"kind": "already_protected"}) == 1.0
