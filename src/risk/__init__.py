"""Risk management module."""

from src.risk.engine import RiskAssessment, RiskScorer, RiskTier

__all__ = ["RiskAssessment", "RiskScorer", "RiskTier"]
