"""Trade execution for the arena engine.

Applies validated decisions to per-model ledgers with fees and slippage.
"""

from arena.execution.executor import ExecutionLeg, ExecutionResult, TradeExecutor

__all__ = [
    "ExecutionLeg",
    "ExecutionResult",
    "TradeExecutor",
]
