"""Simulation orchestrator - drives one arena run candle by candle."""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from arena.core.exceptions import ConfigurationError, OrchestrationError, RunStateError
from arena.core.models import (
    Candle, EquitySnapshot, LogLevel, ModelSpec, ModelState, RecordAction,
    RunInfo, RunStatus, SimulationConfig, TradeDecision, TradeRecord, utc_now
)
from arena.execution import ExecutionResult, TradeExecutor
from arena.market.candle_feed import CandleFeed
from arena.metrics import PerformanceMetrics, calculate_metrics, rank_performance
from arena.providers import DecisionProvider, create_provider
from arena.risk import LiquidationEvent, RiskEngine
from arena.storage.database import Database, run_log

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[ModelSpec], DecisionProvider]


@dataclass
class Participant:
    """A model taking part in a run with its backend and private ledger."""
    spec: ModelSpec
    provider: DecisionProvider
    state: ModelState


@dataclass
class ModelOutcome:
    """What happened to one model on one candle."""
    model_id: str
    decision: TradeDecision
    trades: List[TradeRecord] = field(default_factory=list)
    snapshot: Optional[EquitySnapshot] = None
    liquidation: Optional[LiquidationEvent] = None
    error: Optional[str] = None


class SimulationOrchestrator:
    """
    Owns the per-candle loop of a single run.

    Responsibilities:
    - Loads candles and creates one ledger per model
    - Fans out decide -> execute -> risk per model concurrently
    - Isolates per-model failures (degraded to HOLD)
    - Emits trade records and equity snapshots, persists ledgers
    - Moves the run through pending -> running -> completed | failed
    """

    def __init__(
        self,
        config: SimulationConfig,
        candle_feed: CandleFeed,
        database: Optional[Database] = None,
        provider_factory: Optional[ProviderFactory] = None,
        candle_limit: int = 1000,
        window_size: int = 200,
        progress_log_interval: int = 50,
        run_id: Optional[str] = None,
    ):
        self.config = config
        self.candle_feed = candle_feed
        self.database = database
        self.provider_factory = provider_factory or create_provider
        self.candle_limit = candle_limit
        self.window_size = window_size
        self.progress_log_interval = progress_log_interval

        self.executor = TradeExecutor(config)
        self.risk_engine = RiskEngine(config)

        run_kwargs = {
            "competition_id": config.competition_id,
            "market": config.market,
            "timeframe": config.timeframe,
            "initial_balance": config.initial_balance,
        }
        if run_id:
            run_kwargs["id"] = run_id
        self.run_info = RunInfo(**run_kwargs)

        # State
        self.candles: List[Candle] = []
        self.participants: Dict[str, Participant] = {}
        self.equity_history: Dict[str, List[EquitySnapshot]] = {}
        self.trade_log: Dict[str, List[TradeRecord]] = {}

        self.log = logger.bind(run_id=self.run_info.id, market=config.market)

    @property
    def run_id(self) -> str:
        return self.run_info.id

    @property
    def status(self) -> RunStatus:
        return self.run_info.status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_run(self) -> RunInfo:
        """Persist the pending run row."""
        if self.database:
            await self.database.create_run(self.run_info)
        self.log.info("simulation.created", timeframe=self.config.timeframe)
        return self.run_info

    async def initialize(self, models: Sequence[ModelSpec]):
        """
        Load candles and create one ledger per enabled model.

        Args:
            models: Participating models (disabled ones are skipped)
        """
        if self.run_info.status != RunStatus.PENDING:
            raise RunStateError(f"Run {self.run_id} is {self.run_info.status.value}")

        enabled = [m for m in models if m.enabled]
        if not enabled:
            raise ConfigurationError("No enabled models for this run")

        model_ids = [m.id for m in enabled]
        if len(set(model_ids)) != len(model_ids):
            raise ConfigurationError("Model ids must be unique within a run")

        self.candles = await self.candle_feed.fetch_candles(
            self.config.market, self.config.timeframe, self.candle_limit
        )

        for spec in enabled:
            self.participants[spec.id] = Participant(
                spec=spec,
                provider=self.provider_factory(spec),
                state=ModelState.initial(spec.id, self.config.initial_balance),
            )
            self.equity_history[spec.id] = []
            self.trade_log[spec.id] = []

        self.run_info.total_candles = len(self.candles)
        self.run_info.status = RunStatus.RUNNING
        self.run_info.started_at = utc_now()

        if self.database:
            await self.database.update_run(
                self.run_id,
                status=RunStatus.RUNNING,
                total_candles=self.run_info.total_candles,
                started_at=self.run_info.started_at,
            )
            await self.database.upsert_model_states(
                self.run_id, [p.state for p in self.participants.values()]
            )

        await self._log(
            f"Simulation started with {len(self.participants)} models "
            f"over {len(self.candles)} candles",
            market=self.config.market,
            timeframe=self.config.timeframe,
        )
        self.log.info(
            "simulation.started",
            models=[p.spec.label for p in self.participants.values()],
            total_candles=len(self.candles),
        )

    async def execute(
        self, models: Sequence[ModelSpec], cancel_event: Optional[asyncio.Event] = None
    ) -> RunInfo:
        """Initialize and run to completion; failures end the run as ``failed``."""
        try:
            await self.initialize(models)
        except Exception as e:
            await self._fail(e)
            return self.run_info

        return await self.run(cancel_event)

    async def run(self, cancel_event: Optional[asyncio.Event] = None) -> RunInfo:
        """
        Process every remaining candle in order.

        Args:
            cancel_event: Checked once per candle boundary

        Returns:
            Final RunInfo (completed or failed)
        """
        try:
            if self.run_info.status != RunStatus.RUNNING:
                raise OrchestrationError(f"Run {self.run_id} is not initialized")

            start = self.run_info.current_candle_index
            for index in range(start, len(self.candles)):
                if cancel_event is not None and cancel_event.is_set():
                    self.log.info("simulation.cancelled", candle_index=index)
                    await self._log(f"Simulation stopped at candle {index}")
                    break

                await self.process_candle(index)

                processed = index + 1
                if processed % self.progress_log_interval == 0:
                    self.log.info(
                        "simulation.progress",
                        candle_index=processed,
                        total_candles=len(self.candles),
                    )
                    await self._log(f"Processed {processed}/{len(self.candles)} candles")

            await self.complete()

        except Exception as e:
            await self._fail(e)

        return self.run_info

    async def complete(self):
        """Mark the run completed."""
        self.run_info.status = RunStatus.COMPLETED
        self.run_info.completed_at = utc_now()

        if self.database:
            await self.database.update_run(
                self.run_id,
                status=RunStatus.COMPLETED,
                completed_at=self.run_info.completed_at,
            )

        await self._log(
            f"Simulation completed at candle {self.run_info.current_candle_index}"
            f"/{self.run_info.total_candles}"
        )
        self.log.info(
            "simulation.completed",
            candles_processed=self.run_info.current_candle_index,
            total_candles=self.run_info.total_candles,
        )

    async def _fail(self, error: Exception):
        self.run_info.status = RunStatus.FAILED
        self.run_info.error = str(error) or error.__class__.__name__
        self.run_info.completed_at = utc_now()

        self.log.error(
            "simulation.failed",
            error=self.run_info.error,
            candle_index=self.run_info.current_candle_index,
            exc_info=error,
        )

        if not self.database:
            return

        try:
            await self.database.update_run(
                self.run_id,
                status=RunStatus.FAILED,
                error=self.run_info.error,
                completed_at=self.run_info.completed_at,
            )
            await self.database.add_log(run_log(
                self.run_id,
                f"Simulation failed: {self.run_info.error}",
                level=LogLevel.ERROR,
                error_type=error.__class__.__name__,
            ))
        except Exception as db_error:
            self.log.error("simulation.fail_record_error", error=str(db_error))

    # ------------------------------------------------------------------
    # Candle processing
    # ------------------------------------------------------------------

    def window_for(self, index: int) -> List[Candle]:
        """Up to ``window_size`` candles ending at ``index``."""
        start = max(0, index - self.window_size + 1)
        return self.candles[start:index + 1]

    async def process_candle(self, index: int) -> List[ModelOutcome]:
        """
        Run one candle for every model and persist the results.

        Args:
            index: Candle index

        Returns:
            One ModelOutcome per model
        """
        candle = self.candles[index]
        window = self.window_for(index)
        participants = list(self.participants.values())

        backups = {p.spec.id: p.state.model_copy(deep=True) for p in participants}

        results = await asyncio.gather(
            *[self._process_model(p, window, candle, index) for p in participants],
            return_exceptions=True,
        )

        outcomes = []
        for participant, result in zip(participants, results):
            if isinstance(result, Exception):
                result = self._degrade(participant, backups[participant.spec.id], candle, index, result)
            elif isinstance(result, BaseException):
                raise result
            outcomes.append(result)

        trades = [t for o in outcomes for t in o.trades]
        snapshots = [o.snapshot for o in outcomes if o.snapshot is not None]

        for outcome in outcomes:
            self.trade_log[outcome.model_id].extend(outcome.trades)
            if outcome.snapshot is not None:
                self.equity_history[outcome.model_id].append(outcome.snapshot)

        if self.database:
            if trades:
                await self.database.save_trades(trades)
            await self.database.save_equity_snapshots(snapshots)
            await self.database.upsert_model_states(
                self.run_id, [p.state for p in participants]
            )
            await self.database.update_run(self.run_id, current_candle_index=index + 1)

        self.run_info.current_candle_index = index + 1

        for outcome in outcomes:
            if outcome.liquidation is not None:
                await self._log(
                    f"Liquidated at {outcome.liquidation.price}",
                    level=LogLevel.WARNING,
                    model_id=outcome.model_id,
                    candle_index=index,
                    pnl=str(outcome.liquidation.pnl),
                )
            if outcome.error is not None:
                await self._log(
                    f"Model failed on candle {index}: {outcome.error}",
                    level=LogLevel.ERROR,
                    model_id=outcome.model_id,
                    candle_index=index,
                )

        self.log.debug(
            "simulation.candle_processed",
            candle_index=index,
            trades=len(trades),
        )
        return outcomes

    async def _process_model(
        self,
        participant: Participant,
        window: List[Candle],
        candle: Candle,
        index: int,
    ) -> ModelOutcome:
        """decide -> execute -> risk for one model."""
        state = participant.state
        log = self.log.bind(model_id=state.model_id, candle_index=index)

        try:
            decision = await participant.provider.decide(
                window, state.to_account_state(), self.config
            )
        except Exception as e:
            log.error("simulation.provider_raised", error=str(e), exc_info=True)
            decision = TradeDecision.hold(f"Provider failure - defaulting to HOLD: {e}")

        decision = TradeDecision.sanitize(decision, self.config.max_leverage)

        result = self.executor.execute(state, decision, candle.close)
        liquidation = self.risk_engine.evaluate(state, candle.close)

        outcome = ModelOutcome(model_id=state.model_id, decision=decision, liquidation=liquidation)
        outcome.trades.extend(self._trade_records(state.model_id, index, candle, result))
        if liquidation is not None:
            outcome.trades.append(self._liquidation_record(state.model_id, index, liquidation))
        outcome.snapshot = self._snapshot(state, index, candle)

        if result.executed:
            log.info(
                "simulation.trade_executed",
                action=decision.action.value,
                legs=len(result.legs),
                equity=str(state.equity),
            )
        return outcome

    def _degrade(
        self,
        participant: Participant,
        backup: ModelState,
        candle: Candle,
        index: int,
        error: Exception,
    ) -> ModelOutcome:
        """Roll the ledger back and treat the candle as HOLD for this model."""
        self.log.error(
            "simulation.model_failed",
            model_id=participant.spec.id,
            candle_index=index,
            error=str(error),
            exc_info=error,
        )

        participant.state = backup
        liquidation = self.risk_engine.evaluate(backup, candle.close)

        outcome = ModelOutcome(
            model_id=backup.model_id,
            decision=TradeDecision.hold("Model failure - defaulting to HOLD"),
            liquidation=liquidation,
            error=str(error) or error.__class__.__name__,
        )
        if liquidation is not None:
            outcome.trades.append(self._liquidation_record(backup.model_id, index, liquidation))
        outcome.snapshot = self._snapshot(backup, index, candle)
        return outcome

    def _trade_records(
        self, model_id: str, index: int, candle: Candle, result: ExecutionResult
    ) -> List[TradeRecord]:
        decision = result.decision
        if decision.is_hold:
            return []

        if not result.executed:
            return [TradeRecord(
                run_id=self.run_id,
                model_id=model_id,
                candle_index=index,
                action=RecordAction(decision.action.value),
                leverage=decision.leverage,
                size_pct=decision.size_pct,
                price=candle.close,
                reason=decision.reason,
                executed=False,
            )]

        return [
            TradeRecord(
                run_id=self.run_id,
                model_id=model_id,
                candle_index=index,
                action=leg.action,
                leverage=leg.leverage,
                size_pct=leg.size_pct,
                price=leg.price,
                fee=leg.fee,
                pnl=leg.pnl,
                reason=decision.reason,
            )
            for leg in result.legs
        ]

    def _liquidation_record(
        self, model_id: str, index: int, event: LiquidationEvent
    ) -> TradeRecord:
        return TradeRecord(
            run_id=self.run_id,
            model_id=model_id,
            candle_index=index,
            action=RecordAction.LIQUIDATION,
            leverage=event.leverage,
            price=event.price,
            pnl=event.pnl,
            reason=(
                f"Liquidated: equity {event.equity:.2f} fell through "
                f"{(1 - self.config.liquidation_threshold) * 100:.1f}% of peak {event.peak_equity:.2f}"
            ),
        )

    def _snapshot(self, state: ModelState, index: int, candle: Candle) -> EquitySnapshot:
        return EquitySnapshot(
            run_id=self.run_id,
            model_id=state.model_id,
            candle_index=index,
            timestamp=candle.timestamp,
            equity=state.equity,
            balance=state.balance,
            unrealized_pnl=state.unrealized_pnl,
        )

    async def _log(
        self,
        message: str,
        level: LogLevel = LogLevel.INFO,
        model_id: Optional[str] = None,
        **metadata,
    ):
        if self.database:
            await self.database.add_log(
                run_log(self.run_id, message, level=level, model_id=model_id, **metadata)
            )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_model_states(self) -> Dict[str, ModelState]:
        """Copies of the current ledgers."""
        return {
            model_id: p.state.model_copy(deep=True)
            for model_id, p in self.participants.items()
        }

    def compute_metrics(self) -> Dict[str, PerformanceMetrics]:
        """Performance metrics per model from the in-memory history."""
        return {
            model_id: calculate_metrics(
                p.state,
                self.equity_history[model_id],
                self.config.initial_balance,
                trades=[t for t in self.trade_log[model_id] if t.executed],
                timeframe=self.config.timeframe,
            )
            for model_id, p in self.participants.items()
        }

    def ranking(self) -> List[str]:
        """Model ids best first."""
        metrics = self.compute_metrics()
        by_metrics = {id(m): model_id for model_id, m in metrics.items()}
        return [by_metrics[id(m)] for m in rank_performance(list(metrics.values()))]

    def leaderboard(self) -> List[Dict]:
        """Ledgers sorted by equity with return, win rate and drawdown."""
        return build_leaderboard(
            [p.state for p in self.participants.values()],
            self.config.initial_balance,
            labels={model_id: p.spec.label for model_id, p in self.participants.items()},
        )

    async def close(self):
        """Release provider resources."""
        for participant in self.participants.values():
            await participant.provider.close()


def build_leaderboard(
    states: Sequence[ModelState],
    initial_balance: Decimal,
    labels: Optional[Dict[str, str]] = None,
) -> List[Dict]:
    """Rows sorted by equity, highest first."""
    labels = labels or {}
    rows = []
    for state in sorted(states, key=lambda s: s.equity, reverse=True):
        total_return = (
            (state.equity - initial_balance) / initial_balance * 100
            if initial_balance > 0 else Decimal("0")
        )
        rows.append({
            "model_id": state.model_id,
            "label": labels.get(state.model_id, state.model_id),
            "equity": float(state.equity),
            "balance": float(state.balance),
            "return_pct": round(float(total_return), 2),
            "win_rate": round(float(state.win_rate) * 100, 2),
            "max_drawdown_pct": round(float(state.max_drawdown) * 100, 2),
            "total_trades": state.total_trades,
            "position_side": state.position_side.value,
        })
    return rows
