"""Technical indicators over candle sequences.

Used to enrich provider prompts. Values are floats; positions without
enough history are NaN.
"""
import math
from typing import List, Sequence

import numpy as np
import pandas as pd

from arena.core.models import Candle


def _closes(candles: Sequence[Candle]) -> pd.Series:
    return pd.Series([float(c.close) for c in candles], dtype=float)


def calculate_sma(candles: Sequence[Candle], period: int) -> List[float]:
    """Simple moving average of closes."""
    return _closes(candles).rolling(window=period, min_periods=period).mean().tolist()


def calculate_ema(candles: Sequence[Candle], period: int) -> List[float]:
    """Exponential moving average seeded with the first close."""
    return _closes(candles).ewm(span=period, adjust=False).mean().tolist()


def calculate_rsi(candles: Sequence[Candle], period: int = 14) -> List[float]:
    """RSI from simple averages of gains and losses.

    The first candle has no change and is always NaN.
    """
    closes = _closes(candles)
    if len(closes) == 0:
        return []

    delta = closes.diff()
    gains = delta.clip(lower=0)
    losses = -delta.clip(upper=0)

    avg_gain = gains.rolling(window=period, min_periods=period).mean()
    avg_loss = losses.rolling(window=period, min_periods=period).mean()

    rsi = 100 - 100 / (1 + avg_gain / avg_loss)
    rsi[(avg_loss == 0) & avg_gain.notna()] = 100.0
    return rsi.tolist()


def calculate_volatility(
    candles: Sequence[Candle], period: int = 20, periods_per_year: int = 24 * 365
) -> float:
    """Annualized volatility of log returns over the last ``period`` candles."""
    if len(candles) < period:
        return 0.0

    closes = np.array([float(c.close) for c in candles[-period:]], dtype=float)
    log_returns = np.log(closes[1:] / closes[:-1])
    if len(log_returns) == 0:
        return 0.0

    variance = float(np.var(log_returns))
    return math.sqrt(variance * periods_per_year)
