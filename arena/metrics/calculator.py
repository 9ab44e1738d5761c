"""
Performance metrics for arena models.

Pure functions of a final ledger, its equity history and its trade log:
- Return, volatility, Sharpe / Sortino / Calmar ratios
- Profit factor, average win / loss
- Risk score and composite letter grade
- Leaderboard ranking and cross-model portfolio metrics

Nothing here mutates its inputs or keeps state between calls, so the same
inputs always produce the same PerformanceMetrics.
"""

from dataclasses import asdict, dataclass
from decimal import Decimal
from functools import cmp_to_key
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from arena.core.models import ModelState

RISK_FREE_RATE = 0.02

# Periods per year by candle timeframe
PERIODS_PER_YEAR = {
    "1m": 365 * 24 * 60,
    "5m": 365 * 24 * 12,
    "15m": 365 * 24 * 4,
    "30m": 365 * 24 * 2,
    "1h": 365 * 24,
    "4h": 365 * 6,
    "1d": 365,
    "1w": 52,
}
DEFAULT_PERIODS_PER_YEAR = 365 * 24

GRADE_BANDS = (
    (90, "A+"),
    (80, "A"),
    (70, "B+"),
    (60, "B"),
    (50, "C+"),
    (40, "C"),
    (30, "D"),
)


@dataclass(frozen=True)
class PerformanceMetrics:
    """Derived statistics for one model.

    Percentages are expressed in percent (12.5 means 12.5%); ratios are raw.
    """
    total_return: float
    total_return_usd: float
    sharpe_ratio: float
    max_drawdown: float
    win_rate: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    average_win: float
    average_loss: float
    profit_factor: float
    calmar_ratio: float
    sortino_ratio: float
    volatility: float
    final_equity: float
    peak_equity: float
    current_drawdown: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PortfolioMetrics:
    """Comparison statistics across all models of a run."""
    average_return: float
    best_performer: float
    worst_performer: float
    correlation: float
    diversification_benefit: float


def periods_per_year(timeframe: Optional[str]) -> int:
    """Annualization factor for a candle timeframe (hourly when unknown)."""
    if not timeframe:
        return DEFAULT_PERIODS_PER_YEAR
    return PERIODS_PER_YEAR.get(timeframe, DEFAULT_PERIODS_PER_YEAR)


def _value(item: Any, key: str) -> Any:
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, key, None)


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, Decimal):
        return float(value)
    return float(value)


def calculate_returns(equity_history: Sequence[Any]) -> np.ndarray:
    """Per-step returns; steps from a non-positive equity are skipped."""
    equities = [_to_float(_value(point, "equity")) for point in equity_history]
    returns = []
    for prev_equity, current_equity in zip(equities, equities[1:]):
        if prev_equity > 0:
            returns.append((current_equity - prev_equity) / prev_equity)
    return np.array(returns, dtype=float)


def calculate_volatility(returns: np.ndarray) -> float:
    """Sample standard deviation of returns (0 with fewer than 2 points)."""
    if len(returns) < 2:
        return 0.0
    return float(np.std(returns, ddof=1))


def calculate_metrics(
    model_state: ModelState,
    equity_history: Sequence[Any],
    initial_balance: Decimal,
    trades: Optional[Iterable[Any]] = None,
    timeframe: Optional[str] = None,
    risk_free_rate: float = RISK_FREE_RATE,
) -> PerformanceMetrics:
    """
    Derive performance metrics for one model.

    Args:
        model_state: Final (or current) ledger
        equity_history: Points with an ``equity`` attribute or key, oldest first
        initial_balance: Starting balance of the run
        trades: Trade log entries with a ``pnl`` attribute or key
        timeframe: Candle timeframe used to annualize
        risk_free_rate: Annual risk-free rate for Sharpe / Sortino

    Returns:
        PerformanceMetrics
    """
    initial = _to_float(initial_balance)
    equity = _to_float(model_state.equity)
    peak_equity = _to_float(model_state.peak_equity)
    max_drawdown = _to_float(model_state.max_drawdown)
    periods = periods_per_year(timeframe)

    # Basic returns
    total_return_usd = equity - initial
    total_return = (total_return_usd / initial) * 100 if initial > 0 else 0.0

    # Win rate
    total_trades = model_state.total_trades
    winning_trades = model_state.winning_trades
    win_rate = (winning_trades / total_trades) * 100 if total_trades > 0 else 0.0
    losing_trades = total_trades - winning_trades

    # Trade analysis
    average_win = 0.0
    average_loss = 0.0
    profit_factor = 0.0

    pnls = [
        _to_float(_value(t, "pnl"))
        for t in (trades or [])
        if _value(t, "pnl") is not None
    ]
    if pnls:
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p <= 0]

        total_wins = sum(wins)
        total_losses = abs(sum(losses))

        average_win = total_wins / len(wins) if wins else 0.0
        average_loss = total_losses / len(losses) if losses else 0.0

        if total_losses > 0:
            profit_factor = total_wins / total_losses
        elif total_wins > 0:
            profit_factor = float("inf")

    # Volatility and risk metrics
    returns = calculate_returns(equity_history)
    volatility = calculate_volatility(returns)

    average_return = float(np.mean(returns)) if len(returns) else 0.0
    annualized_return = average_return * periods
    annualized_volatility = volatility * np.sqrt(periods)
    sharpe_ratio = (
        (annualized_return - risk_free_rate) / annualized_volatility
        if annualized_volatility > 0
        else 0.0
    )

    # Sortino ratio (downside deviation only)
    downside = returns[returns < 0]
    if len(downside):
        downside_volatility = float(np.sqrt(np.mean(downside ** 2))) * np.sqrt(periods)
    else:
        downside_volatility = 0.0
    sortino_ratio = (
        (annualized_return - risk_free_rate) / downside_volatility
        if downside_volatility > 0
        else 0.0
    )

    # Calmar ratio
    calmar_ratio = (
        abs(annualized_return) / (max_drawdown * 100) if max_drawdown > 0 else 0.0
    )

    current_drawdown = (
        ((peak_equity - equity) / peak_equity) * 100 if peak_equity > 0 else 0.0
    )

    return PerformanceMetrics(
        total_return=round(total_return, 2),
        total_return_usd=round(total_return_usd, 2),
        sharpe_ratio=round(float(sharpe_ratio), 3),
        max_drawdown=round(max_drawdown * 100, 2),
        win_rate=round(win_rate, 2),
        total_trades=total_trades,
        winning_trades=winning_trades,
        losing_trades=losing_trades,
        average_win=round(average_win, 2),
        average_loss=round(average_loss, 2),
        profit_factor=round(profit_factor, 3),
        calmar_ratio=round(calmar_ratio, 3),
        sortino_ratio=round(float(sortino_ratio), 3),
        volatility=round(float(annualized_volatility) * 100, 2),
        final_equity=round(equity, 2),
        peak_equity=round(peak_equity, 2),
        current_drawdown=round(current_drawdown, 2),
    )


def calculate_max_drawdown(equity_history: Sequence[Any]) -> Tuple[float, Tuple[int, int]]:
    """Maximum drawdown (percent) of an equity curve with its peak/trough indices."""
    max_drawdown = 0.0
    peak = 0.0
    peak_index = 0
    period = (0, 0)

    for index, point in enumerate(equity_history):
        equity = _to_float(_value(point, "equity"))
        if equity > peak:
            peak = equity
            peak_index = index

        if peak <= 0:
            continue

        drawdown = (peak - equity) / peak
        if drawdown > max_drawdown:
            max_drawdown = drawdown
            period = (peak_index, index)

    return max_drawdown * 100, period


def _compare(a: PerformanceMetrics, b: PerformanceMetrics) -> float:
    if abs(b.total_return - a.total_return) > 0.01:
        return b.total_return - a.total_return
    if abs(b.sharpe_ratio - a.sharpe_ratio) > 0.001:
        return b.sharpe_ratio - a.sharpe_ratio
    return a.max_drawdown - b.max_drawdown


def rank_performance(metrics: List[PerformanceMetrics]) -> List[PerformanceMetrics]:
    """Order by total return, then Sharpe, then lower max drawdown."""
    return sorted(metrics, key=cmp_to_key(_compare))


def calculate_risk_score(metrics: PerformanceMetrics) -> int:
    """Risk score from 0 (low risk) to 100 (high risk)."""
    score = 0.0

    # Max drawdown component (0-40 points)
    score += min(metrics.max_drawdown * 0.8, 40)

    # Volatility component (0-30 points)
    score += min(metrics.volatility * 0.3, 30)

    # Low win rate = high risk (0-20 points)
    score += max(0.0, 20 - metrics.win_rate * 0.2)

    # Low Sharpe = high risk (0-10 points)
    if metrics.sharpe_ratio > 0:
        score += max(0.0, 10 - metrics.sharpe_ratio * 5)
    else:
        score += 10

    return min(int(round(score)), 100)


def composite_score(metrics: PerformanceMetrics) -> float:
    """Weighted blend: return 40%, inverted risk 35%, Sharpe 25%."""
    return_score = max(0.0, metrics.total_return)
    risk_score = calculate_risk_score(metrics)
    sharpe_score = max(0.0, metrics.sharpe_ratio * 20)
    return return_score * 0.4 + (100 - risk_score) * 0.35 + sharpe_score * 0.25


def get_performance_grade(metrics: PerformanceMetrics) -> str:
    """Letter grade in {A+, A, B+, B, C+, C, D, F}."""
    composite = composite_score(metrics)
    for threshold, grade in GRADE_BANDS:
        if composite >= threshold:
            return grade
    return "F"


def calculate_portfolio_metrics(all_metrics: List[PerformanceMetrics]) -> PortfolioMetrics:
    """Compare models of one run against each other."""
    if not all_metrics:
        return PortfolioMetrics(0.0, 0.0, 0.0, 0.0, 0.0)

    returns = np.array([m.total_return for m in all_metrics], dtype=float)
    average_return = float(np.mean(returns))
    best = float(np.max(returns))
    worst = float(np.min(returns))

    # Dispersion-based approximation; a true correlation needs aligned curves
    variance = float(np.mean((returns - average_return) ** 2))
    spread = best - worst
    correlation = min(variance / spread, 1.0) if variance > 0 and spread > 0 else 0.0

    average_volatility = float(np.mean([m.volatility for m in all_metrics]))
    portfolio_volatility = float(np.sqrt(variance))
    diversification_benefit = (
        (1 - portfolio_volatility / average_volatility) * 100
        if average_volatility > 0
        else 0.0
    )

    return PortfolioMetrics(
        average_return=round(average_return, 2),
        best_performer=round(best, 2),
        worst_performer=round(worst, 2),
        correlation=round(correlation, 3),
        diversification_benefit=round(max(0.0, diversification_benefit), 2),
    )
