"""Technical indicator calculations."""

from __future__ import annotations

import numpy as np
import pandas as pd


def calculate_ema(series: pd.Series, period: int) -> pd.Series:
    """Exponential moving average."""
    return series.ewm(span=period, adjust=False).mean()


def calculate_rsi(series: pd.Series, period: int) -> pd.Series:
    """Relative Strength Index over simple average gains and losses."""
    delta = series.diff()
    gains = delta.where(delta > 0, 0.0)
    losses = -delta.where(delta < 0, 0.0)
    avg_gain = gains.rolling(window=period, min_periods=period).mean()
    avg_loss = losses.rolling(window=period, min_periods=period).mean()
    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi = 100 - (100 / (1 + rs))
    # A window without losses reads 100, flat windows included.
    rsi = rsi.mask((avg_loss == 0) & avg_gain.notna(), 100.0)
    return rsi.fillna(50)


def calculate_macd(
    series: pd.Series,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> pd.DataFrame:
    """MACD line, signal line and histogram."""
    macd_line = calculate_ema(series, fast) - calculate_ema(series, slow)
    signal_line = calculate_ema(macd_line, signal)
    return pd.DataFrame(
        {
            "macd": macd_line,
            "signal": signal_line,
            "histogram": macd_line - signal_line,
        },
        index=series.index,
    )


def is_strictly_decreasing(values: pd.Series, bars: int) -> bool:
    """True when the last ``bars`` values each fall below the previous one."""
    tail = values.dropna().iloc[-bars:]
    if len(tail) < bars or bars < 2:
        return False
    return bool((tail.diff().iloc[1:] < 0).all())
