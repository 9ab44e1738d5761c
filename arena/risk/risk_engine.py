"""Risk accounting and liquidation for simulated ledgers.

Runs once per model per candle, always after the TradeExecutor:
1. Mark the open position to the candle close (unrealized PnL, equity)
2. Track the running equity peak and the maximum drawdown
3. Force-close the position when equity falls through the liquidation level

CRITICAL: the equity invariant (equity == balance + unrealized_pnl) and the
monotonic max drawdown are re-established here on every call.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from arena.core.models import ONE, ZERO, ModelState, PositionSide, SimulationConfig

logger = structlog.get_logger(__name__)


@dataclass
class LiquidationEvent:
    """A forced position closure.

    Attributes:
        price: Mark price the position was closed at
        pnl: Unrealized PnL folded into balance
        position_side: Side of the liquidated position
        position_size: Signed size of the liquidated position
        leverage: Leverage of the liquidated position
        equity: Equity at the moment of liquidation
        peak_equity: Equity peak the threshold was measured against
    """
    price: Decimal
    pnl: Decimal
    position_side: PositionSide
    position_size: Decimal
    leverage: int
    equity: Decimal
    peak_equity: Decimal


class RiskEngine:
    """
    Post-execution risk recompute and liquidation enforcement.

    Liquidation level: ``peak_equity * (1 - liquidation_threshold)``.
    The check is independent of the model's own decision, so a position
    opened on this candle can be liquidated on the same candle.
    """

    def __init__(self, config: SimulationConfig):
        self.config = config
        self.liquidation_threshold = config.liquidation_threshold

    def evaluate(self, state: ModelState, price: Decimal) -> Optional[LiquidationEvent]:
        """Mark ``state`` to ``price`` and liquidate if required.

        Returns:
            The liquidation event, or None when the position survives
        """
        self.mark_to_market(state, price)

        if self.should_liquidate(state):
            return self.liquidate(state, price)
        return None

    def mark_to_market(self, state: ModelState, price: Decimal) -> None:
        """Recompute unrealized PnL, equity, peak and drawdown."""
        state.unrealized_pnl = state.calculate_pnl(price)
        state.equity = state.balance + state.unrealized_pnl

        if state.equity > state.peak_equity:
            state.peak_equity = state.equity

        drawdown = self.calculate_drawdown(state.equity, state.peak_equity)
        if drawdown > state.max_drawdown:
            state.max_drawdown = drawdown

    @staticmethod
    def calculate_drawdown(equity: Decimal, peak_equity: Decimal) -> Decimal:
        """Fractional decline from peak, bounded to [0, 1]."""
        if peak_equity <= 0:
            return ZERO
        drawdown = (peak_equity - equity) / peak_equity
        return min(max(drawdown, ZERO), ONE)

    def liquidation_level(self, state: ModelState) -> Decimal:
        return state.peak_equity * (ONE - self.liquidation_threshold)

    def should_liquidate(self, state: ModelState) -> bool:
        if state.is_flat:
            return False
        return state.equity <= self.liquidation_level(state)

    def liquidate(self, state: ModelState, price: Decimal) -> LiquidationEvent:
        """Force-close at the current equity value."""
        event = LiquidationEvent(
            price=price,
            pnl=state.unrealized_pnl,
            position_side=state.position_side,
            position_size=state.position_size,
            leverage=state.position_leverage,
            equity=state.equity,
            peak_equity=state.peak_equity,
        )

        state.balance += state.unrealized_pnl
        state.realized_pnl += state.unrealized_pnl
        state.reset_position()
        state.unrealized_pnl = ZERO
        state.equity = state.balance
        state.total_trades += 1

        logger.warning(
            "risk_engine.liquidation",
            model_id=state.model_id,
            price=str(price),
            pnl=str(event.pnl),
            equity=str(event.equity),
            peak_equity=str(event.peak_equity),
            threshold=str(self.liquidation_threshold),
        )

        return event

    def get_risk_report(self, state: ModelState) -> Dict[str, Any]:
        """Snapshot of a ledger's risk position."""
        return {
            "model_id": state.model_id,
            "equity": str(state.equity),
            "peak_equity": str(state.peak_equity),
            "current_drawdown": float(state.current_drawdown),
            "max_drawdown": float(state.max_drawdown),
            "liquidation_level": str(self.liquidation_level(state)),
            "position_side": state.position_side.value,
            "position_leverage": state.position_leverage,
        }
