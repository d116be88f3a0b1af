"""Margin trading engine: the operation surface exposed to the calling agent."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from src.config.settings import Settings
from src.connectors.margin_venue import BinanceMarginVenue, make_client_order_id
from src.connectors.market_data import MarketDataProvider
from src.errors import (
    CapacityExceeded,
    MarginEngineError,
    NotFound,
    PricingUnavailable,
    ValidationError,
    VenuePayloadError,
    VenueRejection,
)
from src.execution.audit import PositionProtectionAuditor, ProtectionStatus, UnprotectedPosition
from src.execution.balances import BalanceAndLiabilityView
from src.execution.exit_plans import ExitPlanEngine, ExitPlanReview, InvalidationCheck
from src.execution.positions import PositionTracker
from src.execution.protection import (
    ProtectionOrchestrator,
    ProtectionOutcome,
    derive_stop_limit_price,
    validate_protection_prices,
)
from src.execution.state_store import ExitPlanStore
from src.models import (
    ExitPlan,
    InvalidationCondition,
    LoanRecord,
    MarginMode,
    OrderIntent,
    OrderSide,
    Position,
    TradingFee,
    VenueOrder,
    exit_side_for,
    split_symbol,
)
from src.risk.borrow import BorrowCapacity, BorrowCapacityCalculator
from src.risk.conversion import CurrencyConverter
from src.risk.engine import RiskAssessment, RiskScorer
from src.risk.precision import PrecisionFormatter, format_decimal
from src.risk.sizing import LeveragedEntry, LeveragedOrderSizer

if TYPE_CHECKING:
    from src.monitoring.metrics import Metrics


FINAL_ORDER_STATES = {"filled", "canceled", "rejected", "expired"}


@dataclass(frozen=True)
class OrderResult:
    order: VenueOrder
    leveraged: LeveragedEntry | None = None
    protection: ProtectionOutcome | VenueOrder | None = None
    protection_error: dict[str, Any] | None = None
    protection_pending: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"order": self.order.to_dict()}
        if self.leveraged is not None:
            data.update(
                {
                    "borrowed_amount": self.leveraged.borrowed_amount,
                    "borrowed_asset": self.leveraged.borrowed_asset,
                    "original_amount": self.leveraged.requested_quantity,
                    "adjusted_amount": self.leveraged.final_quantity,
                    "leverage": self.leveraged.leverage,
                    "position_adjusted": self.leveraged.adjusted,
                }
            )
        data["protection"] = self.protection.to_dict() if self.protection is not None else None
        data["protection_error"] = self.protection_error
        data["protection_pending"] = self.protection_pending
        return data


@dataclass(frozen=True)
class RepayResult:
    asset: str
    status: str
    amount: float = 0.0
    liability: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset": self.asset,
            "status": self.status,
            "amount": self.amount,
            "liability": self.liability,
            "error": self.error,
        }


@dataclass(frozen=True)
class CloseResult:
    symbol: str
    status: str
    size: float
    order: VenueOrder | None = None
    repay: RepayResult | None = None
    cancelled_orders: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "status": self.status,
            "size": self.size,
            "order": self.order.to_dict() if self.order else None,
            "repay": self.repay.to_dict() if self.repay else None,
            "cancelled_orders": self.cancelled_orders,
        }


class MarginTradingEngine:
    """Wire the margin components together and expose the agent-facing operations."""

    def __init__(
        self,
        settings: Settings,
        venue: BinanceMarginVenue,
        market_data: MarketDataProvider,
        exit_plan_store: ExitPlanStore | None = None,
    ) -> None:
        self.settings = settings
        self.venue = venue
        self.market_data = market_data
        margin = settings.margin
        self.margin_mode: MarginMode = margin.mode
        self.log = structlog.get_logger(__name__)

        self.precision = PrecisionFormatter(venue)
        self.converter = CurrencyConverter(market_data, margin.settlement_asset, margin.stable_assets)
        self.balances = BalanceAndLiabilityView(venue, margin.mode, margin.settlement_asset)
        self.risk = RiskScorer(margin.margin_safety_level)
        self.capacity = BorrowCapacityCalculator(self.balances, self.converter, margin)
        self.sizer = LeveragedOrderSizer(
            self.balances, self.capacity, market_data, self.precision, venue, margin
        )
        self.positions = PositionTracker(
            self.balances, venue, market_data, self.converter, self.precision, margin
        )
        self.auditor = PositionProtectionAuditor(venue, self.positions)
        self.protection = ProtectionOrchestrator(
            venue, self.precision, self.auditor, settings.protection, margin.mode
        )
        if exit_plan_store is None:
            state_path = settings.storage.state_path if settings.storage.persist_exit_plans else None
            exit_plan_store = ExitPlanStore(state_path)
        self.exit_plans = ExitPlanEngine(
            self.positions,
            market_data,
            self.converter,
            self.protection,
            exit_plan_store,
            settings.exit_plans,
        )
        # Requested TP/SL per symbol, keyed with the unfilled entry order id when there is one.
        self._pending_protection: dict[str, tuple[str | None, float | None, float | None]] = {}
        self._metrics: Metrics | None = None

    def set_metrics(self, metrics: Metrics) -> None:
        """Inject metrics after construction; Metrics is created later in startup."""
        self._metrics = metrics
        self.protection.set_metrics(metrics)

    # Account

    async def get_available_settlement(self) -> dict[str, Any]:
        return await self.balances.settlement_balance()

    async def get_current_positions(self) -> list[Position]:
        positions = await self.positions.get_positions()
        if self._metrics:
            self._metrics.open_positions.set(len(positions))
        return positions

    async def get_position_summary(self) -> dict[str, Any]:
        positions = await self.positions.get_positions()
        longs = [p for p in positions if p.side == "long"]
        shorts = [p for p in positions if p.side == "short"]

        def pnl(position: Position) -> float:
            if position.unrealized_pnl_settlement is not None:
                return position.unrealized_pnl_settlement
            return position.pnl

        ranked = sorted(positions, key=pnl)
        return {
            "total_positions": len(positions),
            "long_count": len(longs),
            "short_count": len(shorts),
            "total_notional_settlement": sum(p.notional_settlement or 0.0 for p in positions),
            "total_unrealized_pnl_settlement": sum(p.unrealized_pnl_settlement or 0.0 for p in positions),
            "longs": [p.to_dict() for p in longs],
            "shorts": [p.to_dict() for p in shorts],
            "biggest_winner": ranked[-1].to_dict() if ranked and pnl(ranked[-1]) > 0 else None,
            "biggest_loser": ranked[0].to_dict() if ranked and pnl(ranked[0]) < 0 else None,
        }

    async def get_account_overview(self) -> dict[str, Any]:
        positions = await self.positions.get_positions()
        balance = await self.balances.settlement_balance()
        liabilities = await self.balances.current_liabilities()
        margin_level = await self.balances.margin_level()
        risk = self.risk.assess(
            margin_level["margin_level"],
            margin_level["total_asset_btc"],
            margin_level["total_liability_btc"],
            liabilities,
        )
        open_orders: list[dict[str, Any]] = []
        for symbol in sorted({p.symbol for p in positions}):
            try:
                orders = await self.venue.fetch_open_orders(symbol, self.margin_mode)
            except (VenueRejection, VenuePayloadError) as exc:
                self.log.warning("open_orders_unavailable", symbol=symbol, error=str(exc))
                continue
            open_orders.extend(order.to_dict() for order in orders)

        position_value = sum(p.notional_settlement or 0.0 for p in positions)
        unrealized = sum(p.unrealized_pnl_settlement or 0.0 for p in positions)
        signed_value = sum(
            (p.notional_settlement or 0.0) * (1 if p.side == "long" else -1) for p in positions
        )
        equity = balance["net_available"] + signed_value
        return {
            "settlement_balance": balance,
            "positions": [p.to_dict() for p in positions],
            "open_orders": open_orders,
            "liabilities": liabilities,
            "margin_level": margin_level,
            "liquidation_risk": risk.to_dict(),
            "summary": {
                "total_equity_settlement": equity,
                "total_position_value_settlement": position_value,
                "total_unrealized_pnl_settlement": unrealized,
                "free_margin_settlement": balance["free"],
                "margin_utilization_pct": position_value / equity * 100 if equity > 0 else 0.0,
            },
        }

    async def get_max_borrowable(self, asset: str, symbol: str | None = None) -> BorrowCapacity:
        return await self.capacity.max_borrowable(asset, symbol=symbol)

    # Liabilities and risk

    async def get_current_liabilities(self) -> list[dict[str, Any]]:
        return await self.balances.current_liabilities()

    async def get_liability_for_asset(self, asset: str) -> dict[str, Any]:
        return await self.balances.liability_for_asset(asset)

    async def get_total_liability_value(self) -> dict[str, Any]:
        margin_level = await self.balances.margin_level()
        total_btc = margin_level["total_liability_btc"]
        try:
            total_settlement: float | None = await self.converter.to_settlement(total_btc, "BTC")
        except PricingUnavailable as exc:
            self.log.warning("liability_conversion_failed", error=str(exc))
            total_settlement = None
        return {"total_liability_btc": total_btc, "total_liability_settlement": total_settlement}

    async def get_margin_level(self) -> dict[str, float]:
        return await self.balances.margin_level()

    async def get_liquidation_risk(self) -> RiskAssessment:
        margin_level = await self.balances.margin_level()
        liabilities = await self.balances.current_liabilities()
        assessment = self.risk.assess(
            margin_level["margin_level"],
            margin_level["total_asset_btc"],
            margin_level["total_liability_btc"],
            liabilities,
        )
        if self._metrics:
            self._metrics.update_risk(assessment)
        return assessment

    async def borrow_margin(self, asset: str, amount: float, symbol: str | None = None) -> dict[str, Any]:
        asset = asset.upper()
        if amount <= 0:
            raise ValidationError("borrow amount must be positive")
        if self.margin_mode == "isolated" and not symbol:
            raise ValidationError("isolated margin borrowing requires a symbol")
        capacity = await self.capacity.max_borrowable(asset, symbol=symbol)
        if amount > capacity.max_borrow_asset:
            raise CapacityExceeded(
                f"borrow of {amount} {asset} exceeds capacity {capacity.max_borrow_asset:.8f} ({capacity.reason})"
            )
        amount_str = format_decimal(amount)
        tran_id = await self.venue.borrow(asset, amount_str, symbol if self.margin_mode == "isolated" else None)
        self.log.info("margin_borrowed", asset=asset, amount=amount_str, tran_id=tran_id)
        if self._metrics:
            self._metrics.borrowed_total.labels(asset=asset).inc(amount)
        return {"asset": asset, "amount": amount, "tran_id": tran_id}

    async def repay_margin(self, asset: str, amount: float, symbol: str | None = None) -> dict[str, Any]:
        asset = asset.upper()
        if amount <= 0:
            raise ValidationError("repay amount must be positive")
        if self.margin_mode == "isolated" and not symbol:
            raise ValidationError("isolated margin repayment requires a symbol")
        amount_str = format_decimal(amount)
        tran_id = await self.venue.repay(asset, amount_str, symbol if self.margin_mode == "isolated" else None)
        self.log.info("margin_repaid", asset=asset, amount=amount_str, tran_id=tran_id)
        return {"asset": asset, "amount": amount, "tran_id": tran_id}

    async def repay_all_liabilities(self) -> list[RepayResult]:
        """Repay every liability as far as the free balance of each asset allows."""
        if self.margin_mode == "isolated":
            raise ValidationError("repay_all_liabilities supports cross margin only")
        results: list[RepayResult] = []
        account = await self.balances.snapshot()
        for balance in account.assets.values():
            if balance.liability <= 0:
                continue
            amount = min(balance.free, balance.liability)
            if amount <= 0:
                results.append(
                    RepayResult(balance.asset, "insufficient_balance", liability=balance.liability)
                )
                continue
            try:
                await self.venue.repay(balance.asset, format_decimal(amount))
            except VenueRejection as exc:
                results.append(
                    RepayResult(balance.asset, "error", liability=balance.liability, error=exc.message)
                )
                continue
            status = "success" if amount >= balance.liability else "partial"
            results.append(RepayResult(balance.asset, status, amount=amount, liability=balance.liability))
        self.log.info("liabilities_repaid", results=[r.to_dict() for r in results])
        return results

    async def get_borrow_history(
        self, asset: str | None = None, symbol: str | None = None, limit: int = 100
    ) -> list[LoanRecord]:
        if limit < 1 or limit > 100:
            raise ValidationError("borrow history limit must be between 1 and 100")
        return await self.venue.fetch_borrow_history(
            asset, symbol.upper() if symbol and self.margin_mode == "isolated" else None, limit
        )

    async def get_trading_fees(self, symbol: str | None = None) -> list[TradingFee]:
        return await self.venue.fetch_trading_fees(symbol.upper() if symbol else None)

    # Orders

    async def create_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        take_profit: float | None = None,
        stop_loss: float | None = None,
        leverage: float = 1.0,
        margin_mode: MarginMode | None = None,
        reduce_only: bool = False,
    ) -> OrderResult:
        return await self._submit_entry(
            symbol,
            side,
            "market",
            quantity,
            price=None,
            take_profit=take_profit,
            stop_loss=stop_loss,
            leverage=leverage,
            margin_mode=margin_mode,
            reduce_only=reduce_only,
        )

    async def create_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        price: float,
        take_profit: float | None = None,
        stop_loss: float | None = None,
        leverage: float = 1.0,
        margin_mode: MarginMode | None = None,
        time_in_force: str = "GTC",
        post_only: bool = False,
        reduce_only: bool = False,
    ) -> OrderResult:
        if price is None or price <= 0:
            raise ValidationError("limit order requires a positive price")
        return await self._submit_entry(
            symbol,
            side,
            "limit_maker" if post_only else "limit",
            quantity,
            price=price,
            take_profit=take_profit,
            stop_loss=stop_loss,
            leverage=leverage,
            margin_mode=margin_mode,
            reduce_only=reduce_only,
            time_in_force=None if post_only else time_in_force,
        )

    async def create_stop_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        stop_price: float,
        limit_price: float,
        margin_mode: MarginMode | None = None,
        time_in_force: str = "GTC",
        reduce_only: bool = False,
    ) -> VenueOrder:
        symbol = symbol.upper()
        self._validate_order_args(symbol, side, quantity)
        if stop_price is None or limit_price is None or stop_price <= 0 or limit_price <= 0:
            raise ValidationError("stop-limit order requires positive stop and limit prices")
        intent = OrderIntent(
            symbol=symbol,
            side=side,
            order_type="stop_loss_limit",
            quantity=await self.precision.amount_to_precision(symbol, quantity),
            price=await self.precision.price_to_precision(symbol, limit_price),
            stop_price=await self.precision.price_to_precision(symbol, stop_price),
            reduce_only=reduce_only,
            client_order_id=make_client_order_id(symbol, "STP", exit_order=reduce_only),
            time_in_force=time_in_force,
            margin_mode=margin_mode or self.margin_mode,
        )
        order = await self.venue.create_order(intent, leg="protection" if reduce_only else "entry")
        self.log.info("stop_limit_order_placed", symbol=symbol, order_id=order.order_id, stop=intent.stop_price)
        return order

    async def create_stop_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        stop_price: float,
        margin_mode: MarginMode | None = None,
        reduce_only: bool = True,
    ) -> VenueOrder:
        """Stop order executed as a stop-limit priced well through the trigger."""
        limit_price = derive_stop_limit_price(
            stop_price, side, self.settings.protection.fallback_stop_limit_offset_pct
        )
        return await self.create_stop_limit_order(
            symbol,
            side,
            quantity,
            stop_price,
            limit_price,
            margin_mode=margin_mode,
            reduce_only=reduce_only,
        )

    async def create_trailing_stop_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        trailing_percent: float,
        margin_mode: MarginMode | None = None,
        reduce_only: bool = True,
    ) -> VenueOrder:
        """Stop-limit whose trigger trails the market by ``trailing_percent``.

        The venue moves the trigger; the limit is fixed at placement, priced
        through the initial trigger by the fallback stop-limit offset.
        """
        symbol = symbol.upper()
        self._validate_order_args(symbol, side, quantity)
        if trailing_percent is None or not 0.1 <= trailing_percent <= 20:
            raise ValidationError("trailing percent must be between 0.1 and 20")
        price = await self.market_data.get_current_price(symbol)
        direction = 1 if side == "sell" else -1
        initial_trigger = price * (1 - direction * trailing_percent / 100)
        limit_price = derive_stop_limit_price(
            initial_trigger, side, self.settings.protection.fallback_stop_limit_offset_pct
        )
        intent = OrderIntent(
            symbol=symbol,
            side=side,
            order_type="stop_loss_limit",
            quantity=await self.precision.amount_to_precision(symbol, quantity),
            price=await self.precision.price_to_precision(symbol, limit_price),
            reduce_only=reduce_only,
            client_order_id=make_client_order_id(symbol, "TRL", exit_order=reduce_only),
            time_in_force="GTC",
            margin_mode=margin_mode or self.margin_mode,
            trailing_delta=int(round(trailing_percent * 100)),
        )
        order = await self.venue.create_order(intent, leg="protection" if reduce_only else "entry")
        self.log.info(
            "trailing_stop_placed",
            symbol=symbol,
            order_id=order.order_id,
            trailing_delta=intent.trailing_delta,
            limit=intent.price,
        )
        return order

    async def scaled_entry(
        self,
        symbol: str,
        side: OrderSide,
        total_quantity: float,
        price_start: float,
        price_end: float,
        orders: int = 3,
        margin_mode: MarginMode | None = None,
    ) -> list[VenueOrder]:
        """Split an entry into equal limit orders spread evenly between two prices."""
        symbol = symbol.upper()
        self._validate_order_args(symbol, side, total_quantity)
        if orders < 2:
            raise ValidationError("scaled entry needs at least two orders")
        if price_start <= 0 or price_end <= 0:
            raise ValidationError("scaled entry prices must be positive")
        qty = await self.precision.amount_to_precision(symbol, total_quantity / orders)
        if float(qty) <= 0:
            raise ValidationError(f"{total_quantity} split {orders} ways rounds to zero for {symbol}")
        step = (price_end - price_start) / (orders - 1)
        placed: list[VenueOrder] = []
        for index in range(orders):
            intent = OrderIntent(
                symbol=symbol,
                side=side,
                order_type="limit",
                quantity=qty,
                price=await self.precision.price_to_precision(symbol, price_start + step * index),
                client_order_id=make_client_order_id(symbol, f"SC{index}"),
                time_in_force="GTC",
                margin_mode=margin_mode or self.margin_mode,
            )
            placed.append(await self.venue.create_order(intent, leg="entry"))
        self.log.info("scaled_entry_placed", symbol=symbol, side=side, orders=len(placed), quantity=qty)
        return placed

    async def scaled_exit(
        self,
        symbol: str,
        price_start: float,
        price_end: float,
        orders: int = 3,
        percentage: float = 100.0,
    ) -> list[VenueOrder]:
        """Ladder reduce-only limit exits over a share of the open position."""
        symbol = symbol.upper()
        if orders < 2:
            raise ValidationError("scaled exit needs at least two orders")
        if not 0 < percentage <= 100:
            raise ValidationError("percentage must be within (0, 100]")
        position = await self.positions.get_position(symbol)
        if position is None:
            raise NotFound(f"no open position for {symbol}")
        qty = await self.precision.amount_to_precision(symbol, position.size * percentage / 100 / orders)
        if float(qty) <= 0:
            raise ValidationError(f"scaled exit quantity rounds to zero for {symbol}")
        step = (price_end - price_start) / (orders - 1)
        placed: list[VenueOrder] = []
        for index in range(orders):
            intent = OrderIntent(
                symbol=symbol,
                side=exit_side_for(position.side),
                order_type="limit",
                quantity=qty,
                price=await self.precision.price_to_precision(symbol, price_start + step * index),
                reduce_only=True,
                client_order_id=make_client_order_id(symbol, f"TP{index}", exit_order=True),
                time_in_force="GTC",
                margin_mode=position.margin_mode,
            )
            placed.append(await self.venue.create_order(intent, leg="protection"))
        self.log.info("scaled_exit_placed", symbol=symbol, orders=len(placed), quantity=qty)
        return placed

    async def cancel_order(self, symbol: str, order_id: str) -> VenueOrder:
        order = await self.venue.cancel_order(symbol.upper(), order_id, self.margin_mode)
        self._forget_dead_entry(order)
        return order

    async def cancel_all_orders(self, symbol: str) -> int:
        symbol = symbol.upper()
        cancelled = await self.venue.cancel_all_orders(symbol, self.margin_mode)
        pending = self._pending_protection.get(symbol)
        if pending is not None and pending[0] is not None:
            del self._pending_protection[symbol]
            self.log.info("deferred_protection_dropped", symbol=symbol, order_id=pending[0], status="canceled")
        return cancelled

    async def get_open_orders(self, symbol: str) -> list[VenueOrder]:
        return await self.venue.fetch_open_orders(symbol.upper(), self.margin_mode)

    async def get_order_status(self, symbol: str, order_id: str) -> VenueOrder:
        order = await self.venue.fetch_order(symbol.upper(), order_id, self.margin_mode)
        self._forget_dead_entry(order)
        return order

    def _forget_dead_entry(self, order: VenueOrder) -> None:
        """Drop deferred protection once its entry ends without any fill."""
        pending = self._pending_protection.get(order.symbol)
        if pending is None or pending[0] != order.order_id:
            return
        if order.status in FINAL_ORDER_STATES and not order.is_filled and order.executed_quantity <= 0:
            del self._pending_protection[order.symbol]
            self.log.info(
                "deferred_protection_dropped", symbol=order.symbol, order_id=order.order_id, status=order.status
            )

    async def get_order_history(self, symbol: str, limit: int = 50) -> list[VenueOrder]:
        return await self.venue.fetch_order_history(symbol.upper(), limit, self.margin_mode)

    async def modify_order(
        self,
        symbol: str,
        order_id: str,
        new_price: float | None = None,
        new_quantity: float | None = None,
    ) -> VenueOrder:
        """Replace a resting limit order: cancel it, then place the amended copy.

        Margin orders cannot be amended in place. Quantity defaults to the
        unfilled remainder of the original order.
        """
        symbol = symbol.upper()
        if new_price is None and new_quantity is None:
            raise ValidationError("modify_order needs a new price or a new quantity")
        if (new_price is not None and new_price <= 0) or (new_quantity is not None and new_quantity <= 0):
            raise ValidationError("modified price and quantity must be positive")
        current = await self.venue.fetch_order(symbol, order_id, self.margin_mode)
        if current.status in FINAL_ORDER_STATES:
            raise ValidationError(f"order {order_id} is already {current.status}")
        if not current.is_plain_limit:
            raise ValidationError(f"cannot modify {current.order_type} orders")

        pending = self._pending_protection.get(symbol)
        await self.cancel_order(symbol, order_id)
        price = new_price if new_price is not None else current.price
        if price is None:
            raise ValidationError(f"order {order_id} has no limit price to keep")
        quantity = new_quantity if new_quantity is not None else current.quantity - current.executed_quantity
        intent = OrderIntent(
            symbol=symbol,
            side=current.side,
            order_type=current.order_type,
            quantity=await self.precision.amount_to_precision(symbol, quantity),
            price=await self.precision.price_to_precision(symbol, price),
            reduce_only=current.reduce_only,
            client_order_id=make_client_order_id(symbol, "MOD", exit_order=current.reduce_only),
            time_in_force="GTC" if current.order_type == "limit" else None,
            margin_mode=self.margin_mode,
        )
        try:
            order = await self.venue.create_order(intent, leg="protection" if current.reduce_only else "entry")
        except VenueRejection as exc:
            message = f"{exc.message}; original order {order_id} was cancelled"
            self.log.error("order_modify_failed", symbol=symbol, order_id=order_id, error=message)
            raise VenueRejection(message, leg=exc.leg, code=exc.code, status_code=exc.status_code) from exc
        if pending is not None and pending[0] == order_id:
            self._pending_protection[symbol] = (order.order_id, pending[1], pending[2])
        self.log.info(
            "order_modified",
            symbol=symbol,
            replaced_order_id=order_id,
            order_id=order.order_id,
            price=intent.price,
            quantity=intent.quantity,
        )
        return order

    async def close_position(self, symbol: str, auto_repay: bool = True) -> CloseResult:
        symbol = symbol.upper()
        position = await self.positions.get_position(symbol)
        if position is None:
            raise NotFound(f"no open position for {symbol}")
        mode = position.margin_mode

        cancelled = 0
        try:
            cancelled = await self.venue.cancel_all_orders(symbol, mode)
        except VenueRejection as exc:
            self.log.info("close_cancel_skipped", symbol=symbol, error=exc.message)

        filters = await self.precision.filters(symbol)
        qty = await self.precision.amount_to_precision(symbol, position.size)
        if float(qty) <= 0 or float(qty) < filters.min_qty or float(qty) * position.mark_price < filters.min_notional:
            self.log.info("close_skipped_dust", symbol=symbol, size=position.size)
            return CloseResult(symbol=symbol, status="dust_position", size=position.size, cancelled_orders=cancelled)

        intent = OrderIntent(
            symbol=symbol,
            side=exit_side_for(position.side),
            order_type="market",
            quantity=qty,
            reduce_only=True,
            client_order_id=make_client_order_id(symbol, "CLS", exit_order=True),
            margin_mode=mode,
        )
        order = await self.venue.create_order(intent, leg="exit")
        self.log.info(
            "position_closed",
            symbol=symbol,
            side=position.side,
            quantity=qty,
            order_id=order.order_id,
        )

        repay = await self._repay_after_close(symbol, position, mode) if auto_repay else None
        return CloseResult(
            symbol=symbol,
            status="closed",
            size=position.size,
            order=order,
            repay=repay,
            cancelled_orders=cancelled,
        )

    async def close_all_positions(self, auto_repay: bool = True) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for position in await self.positions.get_positions():
            try:
                result = await self.close_position(position.symbol, auto_repay=auto_repay)
                results.append(result.to_dict())
            except MarginEngineError as exc:
                self.log.error("close_position_failed", symbol=position.symbol, error=str(exc))
                results.append({"symbol": position.symbol, "status": "error", "error": str(exc)})
        return results

    # Protection

    async def get_unprotected_positions(self) -> list[UnprotectedPosition]:
        unprotected = await self.auditor.get_unprotected_positions()
        if self._metrics:
            self._metrics.unprotected_positions.set(len(unprotected))
        return unprotected

    async def check_position_protection(self, symbol: str) -> ProtectionStatus:
        return await self.auditor.has_protective_orders(symbol)

    async def add_protection_to_position(
        self,
        symbol: str,
        stop_loss: float,
        take_profit: float,
        stop_limit_price: float | None = None,
    ) -> ProtectionOutcome:
        symbol = symbol.upper()
        position = await self.positions.get_position(symbol)
        if position is None:
            raise NotFound(f"no open position for {symbol}")
        return await self.protection.attach_protection(
            symbol,
            exit_side_for(position.side),
            position.size,
            take_profit_price=take_profit,
            stop_loss_price=stop_loss,
            stop_limit_price=stop_limit_price,
            margin_mode=position.margin_mode,
        )

    async def protect_unprotected_positions(self) -> list[dict[str, Any]]:
        """Find bare positions and attach protection; safe to run every cycle."""
        results: list[dict[str, Any]] = []
        for item in await self.get_unprotected_positions():
            position = item.position
            take_profit, stop_loss = self._protection_levels(position)
            try:
                outcome = await self.protection.attach_protection(
                    position.symbol,
                    exit_side_for(position.side),
                    position.size,
                    take_profit_price=take_profit,
                    stop_loss_price=stop_loss,
                    margin_mode=position.margin_mode,
                )
            except MarginEngineError as exc:
                self.log.error("auto_protection_failed", symbol=position.symbol, error=str(exc))
                results.append(
                    {
                        "symbol": position.symbol,
                        "status": "failed",
                        "leg": getattr(exc, "leg", None) or "protection",
                        "error": str(exc),
                    }
                )
                continue
            self._pending_protection.pop(position.symbol, None)
            results.append({"symbol": position.symbol, "status": outcome.status, "protection": outcome.to_dict()})
        if results:
            self.log.info("protection_sweep_completed", results=len(results))
        return results

    def _protection_levels(self, position: Position) -> tuple[float, float]:
        """TP/SL for a bare position: requested levels, then exit plan, then defaults."""
        _, requested_tp, requested_sl = self._pending_protection.get(position.symbol, (None, None, None))
        plan = self.exit_plans.get_exit_plan(position.symbol)
        reference = position.entry_price or position.mark_price
        cfg = self.settings.protection
        direction = 1 if position.side == "long" else -1
        default_tp = reference * (1 + direction * cfg.default_take_profit_pct / 100)
        default_sl = reference * (1 - direction * cfg.default_stop_loss_pct / 100)
        take_profit = requested_tp or (plan.target_price if plan else None) or default_tp
        stop_loss = requested_sl or (plan.stop_price if plan else None) or default_sl
        return take_profit, stop_loss

    # Exit plans

    async def create_exit_plan(
        self,
        symbol: str,
        target_price: float,
        stop_price: float,
        invalidation_conditions: list[InvalidationCondition | dict[str, Any]] | None = None,
    ) -> ExitPlan:
        return await self.exit_plans.create_exit_plan(
            symbol, target_price, stop_price, invalidation_conditions or []
        )

    async def create_detailed_exit_plan(
        self,
        symbol: str,
        target_price: float,
        stop_price: float,
        invalidation_price: float | None = None,
        macd_consecutive_bars: int | None = None,
    ) -> ExitPlan:
        return await self.exit_plans.create_detailed_exit_plan(
            symbol, target_price, stop_price, invalidation_price, macd_consecutive_bars
        )

    async def execute_exit_plan(self, symbol: str) -> ProtectionOutcome:
        return await self.exit_plans.execute_exit_plan(symbol)

    async def check_invalidation_conditions(self, plan: ExitPlan | str) -> InvalidationCheck:
        return await self.exit_plans.check_invalidation_conditions(plan)

    async def check_all_exit_plans(self) -> list[ExitPlanReview]:
        reviews = await self.exit_plans.check_all_exit_plans()
        if self._metrics:
            self._metrics.exit_plans.set(len(reviews))
        return reviews

    def get_exit_plan(self, symbol: str) -> ExitPlan | None:
        return self.exit_plans.get_exit_plan(symbol)

    def get_all_exit_plans(self) -> dict[str, ExitPlan]:
        return self.exit_plans.get_all_exit_plans()

    async def remove_exit_plan(self, symbol: str) -> bool:
        return await self.exit_plans.remove_exit_plan(symbol)

    # Internals

    @staticmethod
    def _validate_order_args(symbol: str, side: str, quantity: float) -> None:
        split_symbol(symbol)
        if side not in ("buy", "sell"):
            raise ValidationError(f"side must be buy or sell, got '{side}'")
        if quantity is None or quantity <= 0:
            raise ValidationError("quantity must be positive")

    async def _submit_entry(
        self,
        symbol: str,
        side: OrderSide,
        order_type: str,
        quantity: float,
        price: float | None,
        take_profit: float | None,
        stop_loss: float | None,
        leverage: float,
        margin_mode: MarginMode | None,
        reduce_only: bool,
        time_in_force: str | None = None,
    ) -> OrderResult:
        symbol = symbol.upper()
        self._validate_order_args(symbol, side, quantity)
        mode = margin_mode or self.margin_mode
        exit_side: OrderSide = "sell" if side == "buy" else "buy"
        wants_protection = take_profit is not None or stop_loss is not None
        if reduce_only and (leverage > 1 or wants_protection):
            raise ValidationError("reduce-only orders cannot borrow or carry protection")
        if take_profit is not None and stop_loss is not None:
            validate_protection_prices(exit_side, take_profit, stop_loss)
        elif wants_protection and (take_profit or stop_loss) <= 0:
            raise ValidationError("protection prices must be positive")

        leveraged: LeveragedEntry | None = None
        order_quantity = quantity
        if leverage > 1:
            leveraged = await self.sizer.request_leveraged_entry(
                symbol,
                side,
                quantity,
                leverage,
                margin_safety_level=self.settings.margin.margin_safety_level,
                price=price,
                margin_mode=mode,
            )
            order_quantity = leveraged.final_quantity
            if self._metrics:
                if leveraged.borrowed_amount > 0:
                    self._metrics.borrowed_total.labels(asset=leveraged.borrowed_asset).inc(leveraged.borrowed_amount)
                if leveraged.adjusted:
                    self._metrics.entries_adjusted_total.inc()

        intent = OrderIntent(
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=await self.precision.amount_to_precision(symbol, order_quantity),
            price=await self.precision.price_to_precision(symbol, price) if price is not None else None,
            reduce_only=reduce_only,
            client_order_id=make_client_order_id(symbol, order_type[:3].upper(), exit_order=reduce_only),
            time_in_force=time_in_force,
            margin_mode=mode,
        )
        try:
            order = await self.venue.create_order(intent, leg="entry")
        except VenueRejection as exc:
            message = exc.message
            if leveraged is not None and leveraged.borrowed_amount > 0:
                message = (
                    f"{message}; {leveraged.borrowed_amount} {leveraged.borrowed_asset} "
                    "was borrowed and remains outstanding"
                )
            self.log.error("entry_order_failed", symbol=symbol, side=side, error=message, code=exc.code)
            raise VenueRejection(message, leg="entry", code=exc.code, status_code=exc.status_code) from exc
        self.log.info(
            "entry_order_placed",
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=intent.quantity,
            order_id=order.order_id,
            status=order.status,
            leverage=leverage,
        )

        if not wants_protection:
            return OrderResult(order=order, leveraged=leveraged)

        if not order.is_filled and order_type == "market":
            order = await self._await_fill(symbol, order, mode)
        if not order.is_filled:
            if order.status in FINAL_ORDER_STATES and order.executed_quantity <= 0:
                self.log.warning(
                    "entry_not_filled", symbol=symbol, order_id=order.order_id, status=order.status
                )
                return OrderResult(order=order, leveraged=leveraged)
            self._pending_protection[symbol] = (order.order_id, take_profit, stop_loss)
            self.log.info("protection_deferred_until_fill", symbol=symbol, order_id=order.order_id)
            return OrderResult(order=order, leveraged=leveraged, protection_pending=True)

        filled_quantity = order.executed_quantity or float(intent.quantity)
        protection: ProtectionOutcome | VenueOrder | None = None
        protection_error: dict[str, Any] | None = None
        try:
            if take_profit is not None and stop_loss is not None:
                protection = await self.protection.attach_protection(
                    symbol, exit_side, filled_quantity, take_profit, stop_loss, margin_mode=mode
                )
            elif stop_loss is not None:
                protection = await self.create_stop_market_order(
                    symbol, exit_side, filled_quantity, stop_loss, margin_mode=mode
                )
            else:
                protection = await self._place_take_profit(symbol, exit_side, filled_quantity, take_profit, mode)
        except (VenueRejection, VenuePayloadError) as exc:
            # The entry is filled; report the failed protection leg instead of raising.
            protection_error = exc.to_dict() if isinstance(exc, VenueRejection) else {"error": str(exc)}
            protection_error.setdefault("leg", "protection")
            self._pending_protection[symbol] = (None, take_profit, stop_loss)
            self.log.error("post_fill_protection_failed", symbol=symbol, error=str(exc))
        return OrderResult(
            order=order,
            leveraged=leveraged,
            protection=protection,
            protection_error=protection_error,
        )

    async def _place_take_profit(
        self,
        symbol: str,
        exit_side: OrderSide,
        quantity: float,
        take_profit: float,
        margin_mode: MarginMode,
    ) -> VenueOrder:
        intent = OrderIntent(
            symbol=symbol,
            side=exit_side,
            order_type="limit",
            quantity=await self.precision.amount_to_precision(symbol, quantity),
            price=await self.precision.price_to_precision(symbol, take_profit),
            reduce_only=True,
            client_order_id=make_client_order_id(symbol, "TP", exit_order=True),
            time_in_force="GTC",
            margin_mode=margin_mode,
        )
        return await self.venue.create_order(intent, leg="protection")

    async def _await_fill(self, symbol: str, order: VenueOrder, margin_mode: MarginMode) -> VenueOrder:
        cfg = self.settings.protection
        latest = order
        for _ in range(cfg.fill_poll_attempts):
            await asyncio.sleep(cfg.fill_poll_interval_sec)
            try:
                latest = await self.venue.fetch_order(symbol, order.order_id, margin_mode)
            except VenueRejection as exc:
                self.log.warning("order_status_failed", symbol=symbol, order_id=order.order_id, error=exc.message)
                continue
            if latest.status in FINAL_ORDER_STATES:
                break
        return latest

    async def _repay_after_close(self, symbol: str, position: Position, margin_mode: MarginMode) -> RepayResult:
        base, quote = split_symbol(symbol)
        asset = quote if position.side == "long" else base
        try:
            balance = await self.balances.balance(asset, symbol, margin_mode)
        except (VenueRejection, VenuePayloadError) as exc:
            return RepayResult(asset, "error", error=str(exc))
        liability = balance.liability
        if liability <= 0:
            return RepayResult(asset, "no_debt")
        if balance.free < liability:
            self.log.warning(
                "auto_repay_insufficient_balance",
                symbol=symbol,
                asset=asset,
                free=balance.free,
                liability=liability,
            )
            return RepayResult(asset, "insufficient_balance", liability=liability)
        try:
            await self.venue.repay(
                asset, format_decimal(liability), symbol if margin_mode == "isolated" else None
            )
        except VenueRejection as exc:
            self.log.error("auto_repay_failed", symbol=symbol, asset=asset, error=exc.message)
            return RepayResult(asset, "error", liability=liability, error=exc.message)
        self.log.info("auto_repay_completed", symbol=symbol, asset=asset, amount=liability)
        return RepayResult(asset, "success", amount=liability, liability=liability)
