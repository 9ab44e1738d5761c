"""Trade execution against a model's simulated ledger.

Applies a sanitized TradeDecision to a ModelState at the candle close:
- HOLD, CLOSE while flat and zero-size entries are no-ops
- CLOSE realizes PnL and pays the closing fee
- LONG/SHORT opens a fresh position; an opposite-side position is closed
  first as its own leg

Every executed leg is returned so the orchestrator can audit each one.
Unrealized PnL and equity are left to the RiskEngine, which always runs
after the executor for the same candle.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import structlog

from arena.core.models import (
    ONE,
    ZERO,
    ModelState,
    PositionSide,
    RecordAction,
    SimulationConfig,
    TradeAction,
    TradeDecision,
)

logger = structlog.get_logger(__name__)


@dataclass
class ExecutionLeg:
    """One ledger mutation caused by a decision.

    Attributes:
        action: LONG/SHORT for an opening leg, CLOSE for a closing leg
        price: Execution price (slippage applied on opens)
        fee: Fee deducted from balance for this leg
        pnl: Net PnL realized by this leg (closing legs only)
        gross_pnl: PnL before fees (closing legs only)
        size: Signed position size opened or closed
        leverage: Leverage of the position involved
        size_pct: Fraction of balance committed (opening legs only)
    """
    action: RecordAction
    price: Decimal
    fee: Decimal
    size: Decimal
    leverage: int = 1
    size_pct: Decimal = ZERO
    pnl: Optional[Decimal] = None
    gross_pnl: Optional[Decimal] = None


@dataclass
class ExecutionResult:
    """Outcome of applying one decision."""
    decision: TradeDecision
    legs: List[ExecutionLeg] = field(default_factory=list)

    @property
    def executed(self) -> bool:
        return bool(self.legs)

    @property
    def total_fee(self) -> Decimal:
        return sum((leg.fee for leg in self.legs), ZERO)


class TradeExecutor:
    """Deterministic state machine over {NONE, LONG, SHORT} per model."""

    def __init__(self, config: SimulationConfig):
        self.config = config
        self.fee_rate = config.fee_rate
        self.slippage_rate = config.slippage_rate

    def execute(
        self, state: ModelState, decision: TradeDecision, price: Decimal
    ) -> ExecutionResult:
        """Apply ``decision`` to ``state`` at quote ``price`` (the candle close)."""
        result = ExecutionResult(decision=decision)

        if decision.action == TradeAction.HOLD:
            return result

        if decision.action == TradeAction.CLOSE:
            if not state.is_flat:
                result.legs.append(self.close_position(state, price))
            return result

        # LONG / SHORT
        if decision.size_pct <= 0:
            return result

        target_side = (
            PositionSide.LONG if decision.action == TradeAction.LONG else PositionSide.SHORT
        )

        if not state.is_flat and state.position_side != target_side:
            result.legs.append(self.close_position(state, price))

        leg = self.open_position(
            state, target_side, decision.leverage, decision.size_pct, price
        )
        if leg is not None:
            result.legs.append(leg)

        return result

    def execution_price(self, side: PositionSide, price: Decimal) -> Decimal:
        """Quote degraded by slippage against the trader."""
        if side == PositionSide.LONG:
            return price * (ONE + self.slippage_rate)
        return price * (ONE - self.slippage_rate)

    def close_position(self, state: ModelState, price: Decimal) -> ExecutionLeg:
        """Realize the open position at ``price`` and go flat."""
        closed_size = state.position_size
        leverage = state.position_leverage

        pnl = state.calculate_pnl(price)
        # Fee is taken on the size being closed, before the reset below
        fee = abs(closed_size) * price * self.fee_rate
        net = pnl - fee

        state.balance += net
        state.realized_pnl += net
        if pnl > 0:
            state.winning_trades += 1
        state.total_trades += 1
        state.reset_position()

        logger.debug(
            "executor.position_closed",
            model_id=state.model_id,
            price=str(price),
            size=str(closed_size),
            pnl=str(pnl),
            fee=str(fee),
        )

        return ExecutionLeg(
            action=RecordAction.CLOSE,
            price=price,
            fee=fee,
            size=closed_size,
            leverage=leverage,
            pnl=net,
            gross_pnl=pnl,
        )

    def open_position(
        self,
        state: ModelState,
        side: PositionSide,
        leverage: int,
        size_pct: Decimal,
        price: Decimal,
    ) -> Optional[ExecutionLeg]:
        """Open a fresh position sized from the current balance.

        Any same-side position is replaced, not averaged into.
        """
        if state.balance <= 0:
            logger.warning(
                "executor.insufficient_balance",
                model_id=state.model_id,
                balance=str(state.balance),
            )
            return None

        execution_price = self.execution_price(side, price)
        notional = state.balance * size_pct * Decimal(leverage)
        size = notional / execution_price
        fee = notional * self.fee_rate

        state.balance -= fee
        state.position_side = side
        state.position_size = size if side == PositionSide.LONG else -size
        state.position_entry_price = execution_price
        state.position_leverage = leverage
        state.total_trades += 1

        logger.debug(
            "executor.position_opened",
            model_id=state.model_id,
            side=side.value,
            execution_price=str(execution_price),
            notional=str(notional),
            fee=str(fee),
            leverage=leverage,
        )

        return ExecutionLeg(
            action=RecordAction.LONG if side == PositionSide.LONG else RecordAction.SHORT,
            price=execution_price,
            fee=fee,
            size=state.position_size,
            leverage=leverage,
            size_pct=size_pct,
        )
