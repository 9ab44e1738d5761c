"""Data models for the arena simulation engine.

This module defines the data structures shared by every component:
- Market data: Candle
- Run configuration: SimulationConfig, ModelSpec
- Ledger: ModelState and its read-only AccountState view
- Decisions: TradeDecision
- Audit trail: TradeRecord, EquitySnapshot, RunLogEntry, RunInfo

All monetary values use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects, except candle
timestamps which stay in epoch milliseconds as delivered by the exchange.
"""

from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_REASON_LENGTH = 500

ZERO = Decimal("0")
ONE = Decimal("1")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class TradeAction(str, Enum):
    """Actions a model may request for a candle."""
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"
    HOLD = "HOLD"


class RecordAction(str, Enum):
    """Actions that appear in the trade audit log."""
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"
    LIQUIDATION = "LIQUIDATION"


class PositionSide(str, Enum):
    """Position side - long, short, or flat."""
    LONG = "long"
    SHORT = "short"
    NONE = "none"


class RunStatus(str, Enum):
    """Lifecycle of a simulation run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (RunStatus.PENDING, RunStatus.RUNNING)


class LogLevel(str, Enum):
    """Severity of a run log entry."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# =============================================================================
# Market Data Models
# =============================================================================

class Candle(BaseModel):
    """One OHLCV interval.

    Attributes:
        timestamp: Candle open time in epoch milliseconds
        open: Opening price
        high: Highest price
        low: Lowest price
        close: Closing price
        volume: Traded volume
    """
    model_config = ConfigDict(frozen=True)

    timestamp: int = Field(..., ge=0, description="Open time (epoch ms)")
    open: Decimal = Field(..., description="Opening price")
    high: Decimal = Field(..., description="Highest price")
    low: Decimal = Field(..., description="Lowest price")
    close: Decimal = Field(..., gt=0, description="Closing price")
    volume: Decimal = Field(default=ZERO, ge=0, description="Trading volume")

    @field_validator("low")
    @classmethod
    def low_lte_high(cls, v: Decimal, info) -> Decimal:
        """Validate low is <= high."""
        high = info.data.get("high")
        if high is not None and v > high:
            raise ValueError("Low must be <= high")
        return v

    @classmethod
    def from_ohlcv(cls, row: List[Any]) -> "Candle":
        """Build a candle from a ``[ts, open, high, low, close, volume]`` row.

        Raises:
            ValueError: If a price is missing or not a finite number
        """
        prices = [_to_decimal(value) for value in row[1:5]]
        if len(prices) < 4 or any(price is None for price in prices):
            raise ValueError(f"Invalid OHLC prices: {row[1:5]}")
        volume = _to_decimal(row[5]) if len(row) > 5 else None
        return cls(
            timestamp=int(row[0]),
            open=prices[0],
            high=prices[1],
            low=prices[2],
            close=prices[3],
            volume=volume if volume is not None else ZERO,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": float(self.volume),
        }


# =============================================================================
# Configuration Models
# =============================================================================

class SimulationConfig(BaseModel):
    """Immutable competition parameters for one run.

    Rates are fractions: ``fee_rate=0.001`` is 0.1%.
    """
    model_config = ConfigDict(frozen=True)

    market: str = Field(..., min_length=1, description="Market symbol, e.g. BTC")
    timeframe: str = Field(default="1h", description="Candle timeframe")
    initial_balance: Decimal = Field(..., gt=0, description="Starting balance per model")
    max_leverage: int = Field(default=10, ge=1, description="Maximum leverage")
    fee_rate: Decimal = Field(default=Decimal("0.001"), ge=0, le=1)
    slippage_rate: Decimal = Field(default=Decimal("0.0005"), ge=0, le=1)
    liquidation_threshold: Decimal = Field(default=Decimal("0.5"), ge=0, le=1)
    competition_id: Optional[str] = Field(default=None, description="Owning competition")
    competition_name: Optional[str] = Field(default=None)

    def to_prompt_dict(self) -> Dict[str, Any]:
        return {
            "market": self.market,
            "timeframe": self.timeframe,
            "initial_balance": float(self.initial_balance),
            "max_leverage": self.max_leverage,
            "fee_rate": float(self.fee_rate),
            "slippage_rate": float(self.slippage_rate),
            "liquidation_threshold": float(self.liquidation_threshold),
        }


class ModelSpec(BaseModel):
    """A participating trading model.

    ``provider`` selects the decision backend; ``model_name`` is the backend's
    own model identifier (e.g. ``gpt-4o-mini``).
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    display_name: str = Field(default="")
    provider: str = Field(default="random")
    model_name: str = Field(default="")
    base_url: Optional[str] = Field(default=None)
    enabled: bool = Field(default=True)
    strategy_mode: Optional[str] = Field(default=None)

    @property
    def label(self) -> str:
        return self.display_name or f"{self.provider}:{self.model_name or self.id[:8]}"


# =============================================================================
# Decision Models
# =============================================================================

def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


class TradeDecision(BaseModel):
    """A validated trading decision for one (model, candle).

    Never build one straight from backend output; go through ``sanitize``.
    """
    model_config = ConfigDict(frozen=True)

    action: TradeAction = Field(default=TradeAction.HOLD)
    leverage: int = Field(default=1, ge=1)
    size_pct: Decimal = Field(default=ZERO, ge=0, le=1)
    reason: str = Field(default="", max_length=MAX_REASON_LENGTH)

    @classmethod
    def hold(cls, reason: str = "HOLD") -> "TradeDecision":
        """The neutral decision used for every fallback path."""
        return cls(
            action=TradeAction.HOLD,
            leverage=1,
            size_pct=ZERO,
            reason=str(reason)[:MAX_REASON_LENGTH],
        )

    @classmethod
    def sanitize(cls, raw: Any, max_leverage: int) -> "TradeDecision":
        """Clamp an untrusted decision payload into a valid decision.

        - action defaults to HOLD unless it is one of the four literals
        - leverage is floored and clamped to [1, max_leverage]
        - size_pct is clamped to [0, 1]
        - reason is truncated
        """
        if isinstance(raw, TradeDecision):
            raw = raw.model_dump()
        if not isinstance(raw, dict):
            return cls.hold("Invalid decision payload - defaulting to HOLD")

        action_raw = raw.get("action")
        if isinstance(action_raw, TradeAction):
            action_raw = action_raw.value
        action_str = str(action_raw or "").strip().upper()
        try:
            action = TradeAction(action_str)
        except ValueError:
            action = TradeAction.HOLD

        leverage_dec = _to_decimal(raw.get("leverage"))
        if leverage_dec is None:
            leverage = 1
        else:
            leverage = int(leverage_dec.to_integral_value(rounding=ROUND_FLOOR))
        leverage = min(max(1, leverage), max(1, int(max_leverage)))

        size_pct = _to_decimal(raw.get("size_pct")) or ZERO
        size_pct = min(max(ZERO, size_pct), ONE)

        reason = raw.get("reason")
        reason = str(reason) if reason else "No reason provided"

        return cls(
            action=action,
            leverage=leverage,
            size_pct=size_pct,
            reason=reason[:MAX_REASON_LENGTH],
        )

    @property
    def is_hold(self) -> bool:
        return self.action == TradeAction.HOLD


# =============================================================================
# Ledger Models
# =============================================================================

class AccountState(BaseModel):
    """Read-only view of a ledger handed to decision providers."""
    model_config = ConfigDict(frozen=True)

    balance: Decimal
    equity: Decimal
    position_side: PositionSide
    position_size: Decimal
    position_entry_price: Optional[Decimal] = None
    position_leverage: int = 1
    unrealized_pnl: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    total_trades: int = 0
    winning_trades: int = 0

    @property
    def win_rate_pct(self) -> Decimal:
        if self.total_trades == 0:
            return ZERO
        return Decimal(self.winning_trades) / Decimal(self.total_trades) * 100


class ModelState(BaseModel):
    """Per-model mutable ledger for one run.

    Invariants after every update:
    - ``equity == balance + unrealized_pnl``
    - flat position => ``position_size == 0`` and no entry price
    - ``max_drawdown`` never decreases within a run

    ``position_size`` is signed: positive for long, negative for short.
    """
    model_id: str = Field(..., description="Participating model ID")
    balance: Decimal = Field(..., description="Cash balance")
    equity: Decimal = Field(..., description="Balance plus unrealized PnL")
    position_side: PositionSide = Field(default=PositionSide.NONE)
    position_size: Decimal = Field(default=ZERO, description="Signed position size")
    position_entry_price: Optional[Decimal] = Field(default=None)
    position_leverage: int = Field(default=1, ge=1)
    unrealized_pnl: Decimal = Field(default=ZERO)
    realized_pnl: Decimal = Field(default=ZERO)
    total_trades: int = Field(default=0, ge=0)
    winning_trades: int = Field(default=0, ge=0)
    peak_equity: Decimal = Field(..., description="Running equity peak")
    max_drawdown: Decimal = Field(default=ZERO, ge=0, le=1, description="Fraction")

    @classmethod
    def initial(cls, model_id: str, initial_balance: Decimal) -> "ModelState":
        """Fresh ledger at run start."""
        return cls(
            model_id=model_id,
            balance=initial_balance,
            equity=initial_balance,
            peak_equity=initial_balance,
        )

    @property
    def is_flat(self) -> bool:
        return self.position_side == PositionSide.NONE

    @property
    def win_rate(self) -> Decimal:
        """Winning trades over total trades as a fraction."""
        if self.total_trades == 0:
            return ZERO
        return Decimal(self.winning_trades) / Decimal(self.total_trades)

    @property
    def current_drawdown(self) -> Decimal:
        if self.peak_equity <= 0:
            return ZERO
        return (self.peak_equity - self.equity) / self.peak_equity

    def calculate_pnl(self, price: Decimal) -> Decimal:
        """PnL of the open position marked at ``price``; zero when flat."""
        if self.is_flat or self.position_entry_price is None:
            return ZERO
        return self.position_size * (price - self.position_entry_price)

    def reset_position(self) -> None:
        """Go flat."""
        self.position_side = PositionSide.NONE
        self.position_size = ZERO
        self.position_entry_price = None
        self.position_leverage = 1

    def to_account_state(self) -> AccountState:
        return AccountState(
            balance=self.balance,
            equity=self.equity,
            position_side=self.position_side,
            position_size=self.position_size,
            position_entry_price=self.position_entry_price,
            position_leverage=self.position_leverage,
            unrealized_pnl=self.unrealized_pnl,
            realized_pnl=self.realized_pnl,
            total_trades=self.total_trades,
            winning_trades=self.winning_trades,
        )


# =============================================================================
# Audit Models
# =============================================================================

class TradeRecord(BaseModel):
    """Append-only audit entry for a decision leg or a liquidation.

    ``pnl`` is only set on legs that realize PnL (close, reversal close,
    liquidation) and holds the net amount added to ``realized_pnl``.
    ``executed`` is False for non-HOLD decisions that changed nothing,
    e.g. CLOSE while flat.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    run_id: str
    model_id: str
    candle_index: int = Field(..., ge=0)
    action: RecordAction
    leverage: int = Field(default=1, ge=1)
    size_pct: Decimal = Field(default=ZERO)
    price: Decimal = Field(..., description="Execution price")
    fee: Decimal = Field(default=ZERO, ge=0)
    pnl: Optional[Decimal] = Field(default=None)
    reason: str = Field(default="", max_length=MAX_REASON_LENGTH)
    executed: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now)


class EquitySnapshot(BaseModel):
    """One equity reading per (model, candle)."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    model_id: str
    candle_index: int = Field(..., ge=0)
    timestamp: int = Field(default=0, description="Candle time (epoch ms)")
    equity: Decimal
    balance: Decimal
    unrealized_pnl: Decimal


class RunInfo(BaseModel):
    """A simulation run row."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    competition_id: Optional[str] = None
    market: Optional[str] = None
    timeframe: Optional[str] = None
    initial_balance: Optional[Decimal] = None
    status: RunStatus = RunStatus.PENDING
    current_candle_index: int = 0
    total_candles: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def progress_pct(self) -> float:
        if self.total_candles <= 0:
            return 0.0
        return round(self.current_candle_index / self.total_candles * 100, 1)

    @property
    def duration_seconds(self) -> Optional[int]:
        if self.started_at is None:
            return None
        end = self.completed_at or utc_now()
        return int((end - self.started_at).total_seconds())


class RunLogEntry(BaseModel):
    """A run log line shown by ``status``."""
    run_id: str
    model_id: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
