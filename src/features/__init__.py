"""Technical indicators module."""

from src.features.indicators import (
    calculate_ema,
    calculate_macd,
    calculate_rsi,
    is_strictly_decreasing,
)

__all__ = [
    "calculate_ema",
    "calculate_macd",
    "calculate_rsi",
    "is_strictly_decreasing",
]
