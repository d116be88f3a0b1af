import asyncio
import hmac
from hashlib import sha256
from urllib.parse import urlencode

import httpx
import pytest
from prometheus_client import CollectorRegistry

from src.connectors.margin_venue import BinanceMarginVenue
from src.connectors.rest_client import BinanceMarginRestClient
from src.errors import VenueRejection
from src.monitoring.metrics import Metrics
from tests.conftest import make_settings


def _client(handler, **overrides) -> BinanceMarginRestClient:
    return BinanceMarginRestClient(make_settings(**overrides), transport=httpx.MockTransport(handler))


def test_signed_request_carries_key_and_valid_signature() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"tranId": 42}, headers={"x-mbx-used-weight-1m": "17"})

    async def run() -> BinanceMarginRestClient:
        rest = _client(handler)
        try:
            await rest.borrow_repay("USDT", "10", "BORROW")
        finally:
            await rest.close()
        return rest

    rest = asyncio.run(run())

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/sapi/v1/margin/borrow-repay"
    assert request.headers["X-MBX-APIKEY"] == "k"
    items = list(request.url.params.multi_items())
    signature = dict(items)["signature"]
    unsigned = urlencode([(k, v) for k, v in items if k != "signature"])
    assert signature == hmac.new(b"s", unsigned.encode(), sha256).hexdigest()
    assert dict(items)["type"] == "BORROW"
    assert dict(items)["isIsolated"] == "FALSE"
    assert rest.rate_limiter.current_weight == 17


def test_public_request_is_unsigned() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"symbol": "BTCUSDT", "price": "50000.00"})

    async def run() -> dict:
        rest = _client(handler)
        try:
            return await rest.get_ticker_price("BTCUSDT")
        finally:
            await rest.close()

    assert asyncio.run(run())["price"] == "50000.00"
    assert "signature" not in seen[0].url.params


def test_server_errors_are_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"serverTime": 1_700_000_000_000})

    async def run() -> int:
        rest = _client(handler)
        try:
            return await rest.get_server_time()
        finally:
            await rest.close()

    assert asyncio.run(run()) == 1_700_000_000_000
    assert calls["count"] == 2


def test_client_errors_are_not_retried_and_counted() -> None:
    calls = {"count": 0}
    registry = CollectorRegistry()
    metrics = Metrics(registry)

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(400, json={"code": -2010, "msg": "Account has insufficient balance."})

    async def run() -> None:
        rest = _client(handler)
        rest.set_metrics(metrics)
        try:
            await rest.place_order({"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": "1"})
        finally:
            await rest.close()

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(run())
    assert calls["count"] == 1
    assert registry.get_sample_value("rest_errors_total", {"kind": "http"}) == 1.0


def test_venue_translates_http_errors_with_leg_and_code() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": -3045, "msg": "The system does not have enough asset now."})

    async def run() -> None:
        rest = _client(handler)
        try:
            await BinanceMarginVenue(rest).borrow("usdt", "10")
        finally:
            await rest.close()

    with pytest.raises(VenueRejection) as excinfo:
        asyncio.run(run())

    assert excinfo.value.leg == "borrow"
    assert excinfo.value.code == -3045
    assert excinfo.value.status_code == 400
    assert "enough asset" in excinfo.value.message


def test_sanitize_params_redacts_signature() -> None:
    params = {"symbol": "BTCUSDT", "timestamp": 1, "recvWindow": 5000, "signature": "abc"}

    assert BinanceMarginRestClient._sanitize_params(params) == {
        "symbol": "BTCUSDT",
        "signature": "<redacted>",
    }


def test_exchange_info_updates_weight_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "rateLimits": [{"rateLimitType": "REQUEST_WEIGHT", "interval": "MINUTE", "limit": 1200}],
                "symbols": [],
            },
        )

    async def run() -> BinanceMarginRestClient:
        rest = _client(handler)
        try:
            await rest.get_exchange_info("BTCUSDT")
        finally:
            await rest.close()
        return rest

    assert asyncio.run(run()).rate_limiter.max_weight == 1200


@pytest.mark.asyncio
async def test_borrow_history_queries_borrow_records_through_venue() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "rows": [
                    {
                        "isolatedSymbol": "",
                        "amount": "10",
                        "asset": "USDT",
                        "interest": "0",
                        "principal": "10",
                        "status": "CONFIRMED",
                        "timestamp": 1_700_000_000_000,
                        "txId": 12807067523,
                    }
                ],
                "total": 1,
            },
        )

    rest = _client(handler)
    try:
        records = await BinanceMarginVenue(rest).fetch_borrow_history("usdt", limit=20)
    finally:
        await rest.close()

    params = dict(seen[0].url.params.multi_items())
    assert seen[0].url.path == "/sapi/v1/margin/borrow-repay"
    assert params["type"] == "BORROW"
    assert params["asset"] == "USDT"
    assert params["size"] == "20"
    assert "isolatedSymbol" not in params
    assert records[0].amount == 10.0
    assert records[0].status == "confirmed"
    assert records[0].isolated_symbol is None
