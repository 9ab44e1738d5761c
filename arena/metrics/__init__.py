"""Performance metrics for ranking arena models."""

from arena.metrics.calculator import (
    PerformanceMetrics,
    PortfolioMetrics,
    calculate_max_drawdown,
    calculate_metrics,
    calculate_portfolio_metrics,
    calculate_risk_score,
    get_performance_grade,
    periods_per_year,
    rank_performance,
)

__all__ = [
    "PerformanceMetrics",
    "PortfolioMetrics",
    "calculate_max_drawdown",
    "calculate_metrics",
    "calculate_portfolio_metrics",
    "calculate_risk_score",
    "get_performance_grade",
    "periods_per_year",
    "rank_performance",
]
