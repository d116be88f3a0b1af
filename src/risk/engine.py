"""Margin level risk scoring."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
    LIQUIDATION_IMMINENT = "LIQUIDATION_IMMINENT"


# Lower bound of each tier, inclusive; anything below the last is LIQUIDATION_IMMINENT.
TIER_THRESHOLDS: tuple[tuple[float, RiskTier], ...] = (
    (3.0, RiskTier.LOW),
    (2.0, RiskTier.MEDIUM),
    (1.5, RiskTier.HIGH),
    (1.1, RiskTier.CRITICAL),
)

RECOMMENDATIONS: dict[RiskTier, str] = {
    RiskTier.LOW: "Safe to continue trading",
    RiskTier.MEDIUM: "Consider reducing position size",
    RiskTier.HIGH: "Reduce positions or add collateral",
    RiskTier.CRITICAL: "URGENT: Close positions or repay loans immediately",
    RiskTier.LIQUIDATION_IMMINENT: "CRITICAL: Account will be liquidated soon",
}

TIER_SEVERITY: dict[RiskTier, int] = {tier: index for index, tier in enumerate(RiskTier)}


def score_margin_level(margin_level: float) -> RiskTier:
    for threshold, tier in TIER_THRESHOLDS:
        if margin_level >= threshold:
            return tier
    return RiskTier.LIQUIDATION_IMMINENT


def recommendation_for(tier: RiskTier) -> str:
    return RECOMMENDATIONS[tier]


def borrowing_allowed(margin_level: float, margin_safety_level: float = 1.5) -> bool:
    """New borrowing stops once the margin level reaches the safety level."""
    return margin_level > margin_safety_level


@dataclass(frozen=True)
class RiskAssessment:
    margin_level: float
    total_asset: float
    total_liability: float
    risk_tier: RiskTier
    recommendation: str
    liabilities: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "margin_level": self.margin_level,
            "total_asset": self.total_asset,
            "total_liability": self.total_liability,
            "risk_level": self.risk_tier.value,
            "recommendation": self.recommendation,
            "liabilities": list(self.liabilities),
        }


class RiskScorer:
    """Map account margin state to a liquidation risk tier."""

    def __init__(self, margin_safety_level: float = 1.5) -> None:
        self.margin_safety_level = margin_safety_level

    def assess(
        self,
        margin_level: float,
        total_asset: float,
        total_liability: float,
        liabilities: list[dict[str, Any]] | None = None,
    ) -> RiskAssessment:
        tier = score_margin_level(margin_level)
        return RiskAssessment(
            margin_level=margin_level,
            total_asset=total_asset,
            total_liability=total_liability,
            risk_tier=tier,
            recommendation=recommendation_for(tier),
            liabilities=liabilities or [],
        )

    def can_borrow(self, margin_level: float) -> bool:
        return borrowing_allowed(margin_level, self.margin_safety_level)
