import pytest
from fastapi.testclient import TestClient

from src.api.tools import create_app
from src.execution.engine import MarginTradingEngine


@pytest.fixture
def client(engine: MarginTradingEngine) -> TestClient:
    return TestClient(create_app(engine))


def test_health_reports_trading_gate(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["trading_enabled"] is True
    assert body["trading_blockers"] == []


def test_root_lists_routes(client: TestClient) -> None:
    routes = client.get("/").json()["routes"]

    assert "/orders/market" in routes
    assert "/protection/sweep" in routes


def test_positions_listing(client: TestClient, rest) -> None:
    rest.set_asset("BTC", free=0.01)

    body = client.get("/positions").json()

    assert body["count"] == 1
    assert body["positions"][0]["symbol"] == "BTC/USDT"


def test_market_order_with_protection(client: TestClient, rest) -> None:
    response = client.post(
        "/orders/market",
        json={"symbol": "BTC/USDT", "side": "buy", "quantity": 0.01, "take_profit": 55000, "stop_loss": 45000},
    )

    assert response.status_code == 200
    assert response.json()["protection"]["kind"] == "native_oco"


def test_request_validation_is_422(client: TestClient) -> None:
    response = client.post("/orders/market", json={"symbol": "BTC/USDT", "side": "hold", "quantity": 1})

    assert response.status_code == 422


def test_engine_validation_error_is_422(client: TestClient) -> None:
    response = client.post(
        "/orders/market",
        json={"symbol": "BTC/USDT", "side": "buy", "quantity": 0.01, "take_profit": 45000, "stop_loss": 55000},
    )

    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"


def test_missing_position_is_404(client: TestClient) -> None:
    response = client.post("/positions/close", json={"symbol": "BTC/USDT"})

    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


def test_missing_exit_plan_is_404(client: TestClient) -> None:
    response = client.delete("/exit-plans", params={"symbol": "BTC/USDT"})

    assert response.status_code == 404


def test_venue_rejection_is_502_with_leg(client: TestClient, rest) -> None:
    rest.fail("place_order:MARKET", code=-2010, msg="Account has insufficient balance.")

    response = client.post("/orders/market", json={"symbol": "BTC/USDT", "side": "buy", "quantity": 0.01})

    assert response.status_code == 502
    body = response.json()
    assert body["leg"] == "entry"
    assert body["code"] == -2010


def test_capacity_exceeded_is_409(client: TestClient, rest) -> None:
    rest.set_asset("USDT", free=1.0)
    rest.total_net_asset_btc = 0.0

    response = client.post("/orders/market", json={"symbol": "BTC/USDT", "side": "buy", "quantity": 10, "leverage": 5})

    assert response.status_code == 409


def test_unknown_borrow_capacity_is_503(client: TestClient) -> None:
    response = client.get("/borrow/max", params={"asset": "DOGE"})

    assert response.status_code == 503


def test_liquidation_risk_endpoint(client: TestClient, rest) -> None:
    rest.margin_level = 1.6

    body = client.get("/risk/liquidation").json()

    assert body["risk_level"] == "HIGH"


def test_modify_order_route_replaces_limit(client: TestClient, rest) -> None:
    placed = client.post(
        "/orders/limit", json={"symbol": "BTC/USDT", "side": "buy", "quantity": 0.01, "price": 48000}
    ).json()

    response = client.post(
        "/orders/modify",
        json={"symbol": "BTC/USDT", "order_id": placed["order"]["order_id"], "new_price": 47500},
    )

    assert response.status_code == 200
    assert response.json()["price"] == 47500.0
    assert rest.placed[-1]["price"] == "47500"


def test_borrow_history_and_fee_routes(client: TestClient, rest) -> None:
    rest.fees["BTCUSDT"] = ("0.001", "0.001")
    client.post("/orders/market", json={"symbol": "BTC/USDT", "side": "buy", "quantity": 0.01, "leverage": 2})

    history = client.get("/liabilities/borrow-history", params={"asset": "USDT"}).json()
    fees = client.get("/orders/fees", params={"symbol": "BTC/USDT"}).json()

    assert history["count"] == 1
    assert history["records"][0]["amount"] == 10.0
    assert fees["fees"] == [{"symbol": "BTCUSDT", "maker": 0.001, "taker": 0.001}]
