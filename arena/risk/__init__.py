"""Risk management module for the arena engine.

This module provides:
- Mark-to-market of open positions after every candle
- Equity peak and maximum drawdown tracking
- Same-candle forced liquidation
"""

from arena.risk.risk_engine import LiquidationEvent, RiskEngine

__all__ = [
    'LiquidationEvent',
    'RiskEngine',
]
