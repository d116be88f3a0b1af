"""HTTP tool surface over the margin trading engine."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.errors import (
    BorrowCapacityUnknown,
    CapacityExceeded,
    MarginEngineError,
    NotFound,
    PricingUnavailable,
    ValidationError,
    VenuePayloadError,
    VenueRejection,
)
from src.execution.engine import MarginTradingEngine


ERROR_STATUS: tuple[tuple[type[MarginEngineError], int], ...] = (
    (ValidationError, 422),
    (NotFound, 404),
    (CapacityExceeded, 409),
    (PricingUnavailable, 503),
    (BorrowCapacityUnknown, 503),
    (VenueRejection, 502),
    (VenuePayloadError, 502),
)


class MarketOrderRequest(BaseModel):
    symbol: str
    side: Literal["buy", "sell"]
    quantity: float = Field(gt=0)
    take_profit: float | None = Field(default=None, gt=0)
    stop_loss: float | None = Field(default=None, gt=0)
    leverage: float = Field(default=1.0, ge=1)
    margin_mode: Literal["cross", "isolated"] | None = None
    reduce_only: bool = False


class LimitOrderRequest(MarketOrderRequest):
    price: float = Field(gt=0)
    time_in_force: Literal["GTC", "IOC", "FOK"] = "GTC"
    post_only: bool = False


class StopLimitOrderRequest(BaseModel):
    symbol: str
    side: Literal["buy", "sell"]
    quantity: float = Field(gt=0)
    stop_price: float = Field(gt=0)
    limit_price: float = Field(gt=0)
    margin_mode: Literal["cross", "isolated"] | None = None
    reduce_only: bool = False


class ModifyOrderRequest(BaseModel):
    symbol: str
    order_id: str
    new_price: float | None = Field(default=None, gt=0)
    new_quantity: float | None = Field(default=None, gt=0)


class TrailingStopRequest(BaseModel):
    symbol: str
    side: Literal["buy", "sell"]
    quantity: float = Field(gt=0)
    trailing_percent: float = Field(ge=0.1, le=20)
    margin_mode: Literal["cross", "isolated"] | None = None
    reduce_only: bool = True


class ClosePositionRequest(BaseModel):
    symbol: str
    auto_repay: bool = True


class ProtectionRequest(BaseModel):
    symbol: str
    stop_loss: float = Field(gt=0)
    take_profit: float = Field(gt=0)
    stop_limit_price: float | None = Field(default=None, gt=0)


class ConditionModel(BaseModel):
    type: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class ExitPlanRequest(BaseModel):
    symbol: str
    target_price: float = Field(gt=0)
    stop_price: float = Field(gt=0)
    invalidation_conditions: list[ConditionModel] = Field(default_factory=list)


class DetailedExitPlanRequest(BaseModel):
    symbol: str
    target_price: float = Field(gt=0)
    stop_price: float = Field(gt=0)
    invalidation_price: float | None = Field(default=None, gt=0)
    macd_consecutive_bars: int | None = Field(default=None, ge=2)


def error_response(exc: MarginEngineError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    body: dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, VenueRejection):
        body.update(exc.to_dict())
    return JSONResponse(status_code=status_code, content=body)


def create_app(engine: MarginTradingEngine) -> FastAPI:
    """Create the FastAPI application bound to ``engine``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        app.state.start_time = time.time()
        yield

    app = FastAPI(
        title="Margin Trading Tools API",
        description="Leveraged margin trading operations for an automated agent",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.start_time = time.time()

    @app.exception_handler(MarginEngineError)
    async def handle_engine_error(request: Request, exc: MarginEngineError) -> JSONResponse:
        return error_response(exc)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        settings = engine.settings
        allowed, blockers = settings.trading_gate()
        return {
            "status": "healthy",
            "uptime_sec": time.time() - app.state.start_time,
            "mode": settings.run.mode,
            "margin_mode": settings.margin.mode,
            "trading_enabled": allowed,
            "trading_blockers": blockers,
        }

    # Account

    @app.get("/account/overview")
    async def account_overview() -> dict[str, Any]:
        return await engine.get_account_overview()

    @app.get("/account/settlement")
    async def settlement_balance() -> dict[str, Any]:
        return await engine.get_available_settlement()

    @app.get("/positions")
    async def positions() -> dict[str, Any]:
        current = await engine.get_current_positions()
        return {"count": len(current), "positions": [p.to_dict() for p in current]}

    @app.get("/positions/summary")
    async def position_summary() -> dict[str, Any]:
        return await engine.get_position_summary()

    @app.get("/borrow/max")
    async def max_borrowable(
        asset: str = Query(..., min_length=1),
        symbol: str | None = Query(default=None),
    ) -> dict[str, Any]:
        capacity = await engine.get_max_borrowable(asset, symbol)
        return capacity.to_dict()

    # Orders

    @app.post("/orders/market")
    async def market_order(body: MarketOrderRequest) -> dict[str, Any]:
        result = await engine.create_market_order(**body.model_dump())
        return result.to_dict()

    @app.post("/orders/limit")
    async def limit_order(body: LimitOrderRequest) -> dict[str, Any]:
        result = await engine.create_limit_order(**body.model_dump())
        return result.to_dict()

    @app.post("/orders/stop-limit")
    async def stop_limit_order(body: StopLimitOrderRequest) -> dict[str, Any]:
        order = await engine.create_stop_limit_order(**body.model_dump())
        return order.to_dict()

    @app.post("/orders/trailing-stop")
    async def trailing_stop_order(body: TrailingStopRequest) -> dict[str, Any]:
        order = await engine.create_trailing_stop_order(**body.model_dump())
        return order.to_dict()

    @app.post("/orders/modify")
    async def modify_order(body: ModifyOrderRequest) -> dict[str, Any]:
        order = await engine.modify_order(**body.model_dump())
        return order.to_dict()

    @app.get("/orders/fees")
    async def trading_fees(symbol: str | None = Query(default=None)) -> dict[str, Any]:
        fees = await engine.get_trading_fees(symbol)
        return {"count": len(fees), "fees": [f.to_dict() for f in fees]}

    @app.get("/orders/open")
    async def open_orders(symbol: str = Query(...)) -> dict[str, Any]:
        orders = await engine.get_open_orders(symbol)
        return {"count": len(orders), "orders": [o.to_dict() for o in orders]}

    @app.post("/positions/close")
    async def close_position(body: ClosePositionRequest) -> dict[str, Any]:
        result = await engine.close_position(body.symbol, auto_repay=body.auto_repay)
        return result.to_dict()

    # Exit plans

    @app.post("/exit-plans")
    async def create_exit_plan(body: ExitPlanRequest) -> dict[str, Any]:
        plan = await engine.create_exit_plan(
            body.symbol,
            body.target_price,
            body.stop_price,
            [c.model_dump() for c in body.invalidation_conditions],
        )
        return plan.to_dict()

    @app.post("/exit-plans/detailed")
    async def create_detailed_exit_plan(body: DetailedExitPlanRequest) -> dict[str, Any]:
        plan = await engine.create_detailed_exit_plan(**body.model_dump())
        return plan.to_dict()

    @app.get("/exit-plans")
    async def list_exit_plans() -> dict[str, Any]:
        plans = engine.get_all_exit_plans()
        return {"count": len(plans), "plans": {s: p.to_dict() for s, p in plans.items()}}

    @app.post("/exit-plans/check")
    async def check_exit_plans() -> dict[str, Any]:
        reviews = await engine.check_all_exit_plans()
        return {"count": len(reviews), "reviews": [r.to_dict() for r in reviews]}

    @app.post("/exit-plans/execute")
    async def execute_exit_plan(symbol: str = Query(...)) -> dict[str, Any]:
        outcome = await engine.execute_exit_plan(symbol)
        return outcome.to_dict()

    @app.delete("/exit-plans")
    async def remove_exit_plan(symbol: str = Query(...)) -> dict[str, Any]:
        removed = await engine.remove_exit_plan(symbol)
        if not removed:
            raise NotFound(f"no exit plan for {symbol.upper()}")
        return {"symbol": symbol.upper(), "removed": True}

    # Protection

    @app.get("/protection/unprotected")
    async def unprotected_positions() -> dict[str, Any]:
        items = await engine.get_unprotected_positions()
        return {"count": len(items), "positions": [i.to_dict() for i in items]}

    @app.get("/protection/status")
    async def protection_status(symbol: str = Query(...)) -> dict[str, Any]:
        status = await engine.check_position_protection(symbol)
        return status.to_dict()

    @app.post("/protection")
    async def add_protection(body: ProtectionRequest) -> dict[str, Any]:
        outcome = await engine.add_protection_to_position(**body.model_dump())
        return outcome.to_dict()

    @app.post("/protection/sweep")
    async def protection_sweep() -> dict[str, Any]:
        results = await engine.protect_unprotected_positions()
        return {"count": len(results), "results": results}

    # Liabilities and risk

    @app.get("/liabilities")
    async def liabilities() -> dict[str, Any]:
        items = await engine.get_current_liabilities()
        return {"count": len(items), "liabilities": items}

    @app.get("/liabilities/borrow-history")
    async def borrow_history(
        asset: str | None = Query(default=None),
        symbol: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=100),
    ) -> dict[str, Any]:
        records = await engine.get_borrow_history(asset, symbol, limit)
        return {"count": len(records), "records": [r.to_dict() for r in records]}

    @app.get("/liabilities/total")
    async def total_liability() -> dict[str, Any]:
        return await engine.get_total_liability_value()

    @app.get("/risk/liquidation")
    async def liquidation_risk() -> dict[str, Any]:
        assessment = await engine.get_liquidation_risk()
        return assessment.to_dict()

    @app.get("/risk/margin-level")
    async def margin_level() -> dict[str, Any]:
        return await engine.get_margin_level()

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "name": "Margin Trading Tools API",
            "version": "0.1.0",
            "routes": sorted(
                {getattr(route, "path", "") for route in app.routes if getattr(route, "path", "")}
            ),
        }

    return app
