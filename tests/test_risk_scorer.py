import pytest

from src.risk.engine import RiskScorer, RiskTier, borrowing_allowed, score_margin_level


@pytest.mark.parametrize(
    ("margin_level", "tier"),
    [
        (3.5, RiskTier.LOW),
        (2.5, RiskTier.MEDIUM),
        (1.7, RiskTier.HIGH),
        (1.2, RiskTier.CRITICAL),
        (1.0, RiskTier.LIQUIDATION_IMMINENT),
    ],
)
def test_score_margin_level_tiers(margin_level: float, tier: RiskTier) -> None:
    assert score_margin_level(margin_level) is tier


@pytest.mark.parametrize(
    ("margin_level", "tier"),
    [
        (3.0, RiskTier.LOW),
        (2.0, RiskTier.MEDIUM),
        (1.5, RiskTier.HIGH),
        (1.1, RiskTier.CRITICAL),
    ],
)
def test_tier_boundaries_are_inclusive(margin_level: float, tier: RiskTier) -> None:
    assert score_margin_level(margin_level) is tier


def test_assessment_carries_recommendation() -> None:
    assessment = RiskScorer().assess(1.05, 0.5, 0.48, [{"asset": "USDT", "total": 100.0}])

    data = assessment.to_dict()
    assert data["risk_level"] == "LIQUIDATION_IMMINENT"
    assert data["recommendation"] == "CRITICAL: Account will be liquidated soon"
    assert data["liabilities"] == [{"asset": "USDT", "total": 100.0}]


def test_borrowing_stops_at_safety_level() -> None:
    assert borrowing_allowed(1.51, 1.5)
    assert not borrowing_allowed(1.5, 1.5)
    assert not RiskScorer(2.0).can_borrow(1.9)
