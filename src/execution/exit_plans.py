"""Exit plans: target/stop intent per symbol plus on-demand invalidation checks."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pandas as pd
import structlog

from src.config.settings import ExitPlanConfig
from src.connectors.market_data import MarketDataProvider
from src.errors import (
    NotFound,
    PricingUnavailable,
    StaleDataWarning,
    ValidationError,
    VenuePayloadError,
    VenueRejection,
)
from src.execution.positions import PositionTracker
from src.execution.protection import ProtectionOrchestrator, ProtectionOutcome
from src.execution.state_store import ExitPlanStore
from src.features.indicators import calculate_macd, calculate_rsi, is_strictly_decreasing
from src.models import (
    CONDITION_TYPES,
    ExitPlan,
    InvalidationCondition,
    exit_side_for,
    split_symbol,
)
from src.risk.conversion import CurrencyConverter


RECOMMEND_CLOSE = "CLOSE POSITION IMMEDIATELY - Invalidation conditions met"
RECOMMEND_CONTINUE = "Continue with exit plan"

EVALUATED_TYPES = frozenset({"price_below", "price_above", "macd_decrease", "rsi_below", "rsi_above"})


@dataclass(frozen=True)
class InvalidationCheck:
    symbol: str
    should_invalidate: bool
    triggered_conditions: tuple[InvalidationCondition, ...]
    recommendation: str
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "should_invalidate": self.should_invalidate,
            "triggered_conditions": [c.to_dict() for c in self.triggered_conditions],
            "recommendation": self.recommendation,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ExitPlanReview:
    symbol: str
    plan: ExitPlan
    check: InvalidationCheck | None
    recommendation: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "plan": self.plan.to_dict(),
            "invalidation_check": self.check.to_dict() if self.check else None,
            "recommendation": self.recommendation,
            "error": self.error,
        }


def risk_reward_ratio(entry_price: float, target_price: float, stop_price: float) -> float:
    risk = abs(entry_price - stop_price)
    if risk == 0:
        raise ValidationError("stop price equals entry price; risk/reward is undefined")
    return abs(target_price - entry_price) / risk


def _number(parameters: dict[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = parameters.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    return None


def validate_condition(condition: InvalidationCondition) -> InvalidationCondition:
    """Reject conditions whose parameters cannot be evaluated."""
    params = condition.parameters
    if condition.type in ("price_below", "price_above"):
        price = _number(params, "price")
        if price is None or price <= 0:
            raise ValidationError(f"{condition.type} requires a positive 'price' parameter")
    elif condition.type in ("rsi_below", "rsi_above"):
        level = _number(params, "level")
        if level is None or not 0 <= level <= 100:
            raise ValidationError(f"{condition.type} requires a 'level' between 0 and 100")
    elif condition.type == "macd_decrease":
        bars = _number(params, "consecutive_bars", "consecutiveBars")
        if bars is not None and (bars < 2 or bars != int(bars)):
            raise ValidationError("macd_decrease 'consecutive_bars' must be an integer of at least 2")
    return condition


class ExitPlanEngine:
    """Create, evaluate and execute per-symbol exit plans."""

    def __init__(
        self,
        positions: PositionTracker,
        market_data: MarketDataProvider,
        converter: CurrencyConverter,
        protection: ProtectionOrchestrator,
        store: ExitPlanStore,
        config: ExitPlanConfig,
    ) -> None:
        self.positions = positions
        self.market_data = market_data
        self.converter = converter
        self.protection = protection
        self.store = store
        self.config = config
        self.log = structlog.get_logger(__name__)

    async def create_exit_plan(
        self,
        symbol: str,
        target_price: float,
        stop_price: float,
        invalidation_conditions: Iterable[InvalidationCondition | dict[str, Any]] = (),
    ) -> ExitPlan:
        symbol = symbol.upper()
        if target_price is None or stop_price is None or target_price <= 0 or stop_price <= 0:
            raise ValidationError("exit plan requires positive target and stop prices")
        conditions = tuple(
            validate_condition(
                item if isinstance(item, InvalidationCondition) else InvalidationCondition.from_dict(item)
            )
            for item in invalidation_conditions
        )
        position = await self.positions.get_position(symbol)
        if position is None:
            raise NotFound(f"no open position for {symbol}")
        entry = position.entry_price or position.mark_price
        ratio = risk_reward_ratio(entry, target_price, stop_price)

        direction = 1 if position.side == "long" else -1
        target_pnl = position.size * (target_price - entry) * direction
        stop_pnl = position.size * (stop_price - entry) * direction
        _, quote = split_symbol(symbol)
        if not self.converter.is_stable(quote):
            rate = await self.converter.rate(quote)
            target_pnl *= rate
            stop_pnl *= rate

        plan = ExitPlan(
            symbol=symbol,
            side=position.side,
            entry_price=entry,
            target_price=target_price,
            stop_price=stop_price,
            invalidation_conditions=conditions,
            price_at_creation=position.mark_price,
            target_pnl=target_pnl,
            stop_pnl=stop_pnl,
            risk_reward_ratio=ratio,
        )
        previous = await self.store.put(plan)
        self.log.info(
            "exit_plan_created",
            symbol=symbol,
            side=plan.side,
            target_price=target_price,
            stop_price=stop_price,
            risk_reward_ratio=round(ratio, 4),
            conditions=[c.type for c in conditions],
            replaced=previous is not None,
        )
        return plan

    async def create_detailed_exit_plan(
        self,
        symbol: str,
        target_price: float,
        stop_price: float,
        invalidation_price: float | None = None,
        macd_consecutive_bars: int | None = None,
    ) -> ExitPlan:
        """Exit plan with a price invalidation on the losing side and a MACD momentum check."""
        position = await self.positions.get_position(symbol.upper())
        if position is None:
            raise NotFound(f"no open position for {symbol.upper()}")
        bars = macd_consecutive_bars or self.config.default_macd_bars
        price = invalidation_price if invalidation_price is not None else stop_price
        price_type = "price_below" if position.side == "long" else "price_above"
        conditions = [
            InvalidationCondition(
                type=price_type,
                description=f"price {'below' if price_type == 'price_below' else 'above'} {price}",
                parameters={"price": price},
            ),
            InvalidationCondition(
                type="macd_decrease",
                description=f"MACD histogram decreasing for {bars} consecutive bars",
                parameters={"consecutive_bars": bars},
            ),
        ]
        return await self.create_exit_plan(symbol, target_price, stop_price, conditions)

    def get_exit_plan(self, symbol: str) -> ExitPlan | None:
        return self.store.get(symbol)

    def get_all_exit_plans(self) -> dict[str, ExitPlan]:
        return self.store.all()

    async def remove_exit_plan(self, symbol: str) -> bool:
        removed = await self.store.remove(symbol)
        if removed:
            self.log.info("exit_plan_removed", symbol=symbol.upper())
        return removed

    async def check_invalidation_conditions(self, plan: ExitPlan | str) -> InvalidationCheck:
        if isinstance(plan, str):
            stored = self.store.get(plan)
            if stored is None:
                raise NotFound(f"no exit plan for {plan.upper()}")
            plan = stored

        triggered: list[InvalidationCondition] = []
        warnings: list[str] = []
        current_price: float | None = None
        for condition in plan.invalidation_conditions:
            if condition.type not in EVALUATED_TYPES:
                message = f"unsupported invalidation condition '{condition.type}' ignored"
                if condition.type not in CONDITION_TYPES:
                    message = f"unknown invalidation condition '{condition.type}' ignored"
                self.log.warning("invalidation_condition_unsupported", symbol=plan.symbol, type=condition.type)
                warnings.append(message)
                continue
            try:
                if condition.type in ("price_below", "price_above"):
                    if current_price is None:
                        current_price = await self._live_price(plan.symbol)
                    hit = self._price_condition(condition, current_price)
                elif condition.type == "macd_decrease":
                    hit = await self._macd_decreasing(plan.symbol, condition)
                else:
                    hit = await self._rsi_condition(plan.symbol, condition)
            except StaleDataWarning as exc:
                self.log.warning(
                    "invalidation_data_stale",
                    symbol=plan.symbol,
                    type=condition.type,
                    error=str(exc),
                )
                warnings.append(f"{condition.type}: {exc}")
                continue
            if hit:
                triggered.append(condition)

        should_invalidate = bool(triggered)
        check = InvalidationCheck(
            symbol=plan.symbol,
            should_invalidate=should_invalidate,
            triggered_conditions=tuple(triggered),
            recommendation=RECOMMEND_CLOSE if should_invalidate else RECOMMEND_CONTINUE,
            warnings=tuple(warnings),
        )
        recorded = await self.store.mark_checked(
            plan,
            status="invalidated" if should_invalidate else "valid",
            checked_at=datetime.now(timezone.utc),
        )
        if recorded is None:
            self.log.info("exit_plan_check_not_recorded", symbol=plan.symbol)
        if should_invalidate:
            self.log.warning(
                "exit_plan_invalidated",
                symbol=plan.symbol,
                triggered=[c.type for c in triggered],
            )
        return check

    async def check_all_exit_plans(self) -> list[ExitPlanReview]:
        reviews: list[ExitPlanReview] = []
        for symbol, plan in self.store.all().items():
            try:
                check = await self.check_invalidation_conditions(plan)
            except (VenueRejection, VenuePayloadError, PricingUnavailable) as exc:
                self.log.error("exit_plan_check_failed", symbol=symbol, error=str(exc))
                reviews.append(
                    ExitPlanReview(
                        symbol=symbol,
                        plan=plan,
                        check=None,
                        recommendation=RECOMMEND_CONTINUE,
                        error=str(exc),
                    )
                )
                continue
            current = self.store.get(symbol)
            if current is not None and current.created_at == plan.created_at:
                plan = current
            reviews.append(
                ExitPlanReview(
                    symbol=symbol,
                    plan=plan,
                    check=check,
                    recommendation=check.recommendation,
                )
            )
        return reviews

    async def execute_exit_plan(self, symbol: str) -> ProtectionOutcome:
        """Place OCO protection at the plan's target and stop for the live position."""
        symbol = symbol.upper()
        plan = self.store.get(symbol)
        if plan is None:
            raise NotFound(f"no exit plan for {symbol}")
        position = await self.positions.get_position(symbol)
        if position is None:
            raise NotFound(f"no open position for {symbol}")
        outcome = await self.protection.attach_protection(
            symbol,
            exit_side_for(position.side),
            position.size,
            take_profit_price=plan.target_price,
            stop_loss_price=plan.stop_price,
            margin_mode=position.margin_mode,
        )
        self.log.info("exit_plan_executed", symbol=symbol, outcome=outcome.kind)
        return outcome

    async def _live_price(self, symbol: str) -> float:
        try:
            return await self.market_data.get_current_price(symbol)
        except PricingUnavailable as exc:
            raise StaleDataWarning(str(exc)) from exc

    @staticmethod
    def _price_condition(condition: InvalidationCondition, current_price: float) -> bool:
        threshold = _number(condition.parameters, "price")
        if threshold is None:
            raise StaleDataWarning(f"{condition.type} has no usable price parameter")
        if condition.type == "price_below":
            return current_price < threshold
        return current_price > threshold

    async def _candles(self, symbol: str, count: int) -> pd.DataFrame:
        try:
            candles = await self.market_data.get_candles(symbol, self.config.indicator_timeframe, count)
        except (VenueRejection, VenuePayloadError, PricingUnavailable) as exc:
            raise StaleDataWarning(f"candles unavailable for {symbol}: {exc}") from exc
        if candles is None or candles.empty or "close" not in candles:
            raise StaleDataWarning(f"no candles for {symbol}")
        return candles

    async def _macd_decreasing(self, symbol: str, condition: InvalidationCondition) -> bool:
        bars = int(
            _number(condition.parameters, "consecutive_bars", "consecutiveBars") or self.config.default_macd_bars
        )
        candles = await self._candles(symbol, self.config.macd_candles)
        if len(candles) < self.config.macd_slow:
            raise StaleDataWarning(
                f"{len(candles)} candles is not enough for MACD (need {self.config.macd_slow})"
            )
        macd = calculate_macd(
            candles["close"],
            fast=self.config.macd_fast,
            slow=self.config.macd_slow,
            signal=self.config.macd_signal,
        )
        return is_strictly_decreasing(macd["histogram"], bars)

    async def _rsi_condition(self, symbol: str, condition: InvalidationCondition) -> bool:
        level = _number(condition.parameters, "level")
        if level is None:
            raise StaleDataWarning(f"{condition.type} has no usable level parameter")
        candles = await self._candles(symbol, self.config.rsi_candles)
        if len(candles) < self.config.rsi_period + 1:
            raise StaleDataWarning(
                f"{len(candles)} candles is not enough for RSI({self.config.rsi_period})"
            )
        rsi = float(calculate_rsi(candles["close"], self.config.rsi_period).iloc[-1])
        if condition.type == "rsi_below":
            return rsi < level
        return rsi > level
