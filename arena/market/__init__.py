"""Market data for arena runs: candle feed, cache and indicators."""

from arena.market.candle_feed import (
    CandleCache,
    CandleFeed,
    convert_symbol,
    convert_timeframe,
    generate_mock_candles,
)
from arena.market.indicators import (
    calculate_ema,
    calculate_rsi,
    calculate_sma,
    calculate_volatility,
)

__all__ = [
    "CandleCache",
    "CandleFeed",
    "convert_symbol",
    "convert_timeframe",
    "generate_mock_candles",
    "calculate_ema",
    "calculate_rsi",
    "calculate_sma",
    "calculate_volatility",
]
