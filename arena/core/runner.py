"""
Run control surface.

RunController starts simulation runs as asyncio tasks inside the current
process and exposes stop / status over them. Status is read back from the
database so it also works for runs written by another process.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog

from arena.core.config import (
    ProviderAPIConfig,
    SimulationDefaultsConfig,
    provider_config,
    simulation_defaults,
)
from arena.core.engine import SimulationOrchestrator, build_leaderboard
from arena.core.exceptions import ConfigurationError, RunNotFoundError, RunStateError
from arena.core.models import LogLevel, ModelSpec, RunInfo, RunStatus, SimulationConfig, utc_now
from arena.market.candle_feed import CandleCache, CandleFeed
from arena.metrics import (
    PortfolioMetrics,
    calculate_max_drawdown,
    calculate_metrics,
    calculate_portfolio_metrics,
    calculate_risk_score,
    get_performance_grade,
    rank_performance,
)
from arena.providers import DecisionProvider, create_provider
from arena.storage.database import Database, run_log

logger = structlog.get_logger(__name__)

RECENT_LOG_LIMIT = 10


@dataclass
class ActiveRun:
    """Handle on a run executing in this process."""
    orchestrator: SimulationOrchestrator
    task: asyncio.Task
    cancel_event: asyncio.Event


class RunController:
    """
    Start, stop and inspect arena runs.

    Usage:
        controller = RunController(database)
        run_id = await controller.start(config, models)
        status = await controller.status(run_id)
        await controller.stop(run_id)
    """

    def __init__(
        self,
        database: Database,
        candle_feed: Optional[CandleFeed] = None,
        providers: Optional[ProviderAPIConfig] = None,
        defaults: Optional[SimulationDefaultsConfig] = None,
    ):
        self.database = database
        self.providers = providers or provider_config
        self.defaults = defaults or simulation_defaults
        self.candle_feed = candle_feed or CandleFeed(
            cache=CandleCache(ttl_seconds=self.defaults.cache_ttl_seconds)
        )

        self._runs: Dict[str, ActiveRun] = {}

    def _provider_factory(self, seed: Optional[int]):
        def factory(spec: ModelSpec) -> DecisionProvider:
            return create_provider(
                spec,
                self.providers,
                seed=None if seed is None else f"{seed}:{spec.id}",
                prompt_candles=self.defaults.prompt_candles,
            )
        return factory

    async def start(
        self,
        config: SimulationConfig,
        models: Sequence[ModelSpec],
        seed: Optional[int] = None,
        candle_limit: Optional[int] = None,
    ) -> str:
        """
        Start a run in the background.

        Args:
            config: Competition parameters
            models: Participating models
            seed: Seed for random-fallback providers
            candle_limit: Number of candles (defaults to configuration)

        Returns:
            Run ID
        """
        if not any(m.enabled for m in models):
            raise ConfigurationError("No enabled models for this run")

        orchestrator = SimulationOrchestrator(
            config,
            self.candle_feed,
            database=self.database,
            provider_factory=self._provider_factory(seed),
            candle_limit=candle_limit or self.defaults.candle_limit,
            window_size=self.defaults.window_size,
            progress_log_interval=self.defaults.progress_log_interval,
        )
        await orchestrator.create_run()

        run_id = orchestrator.run_id
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._execute(orchestrator, list(models), cancel_event),
            name=f"arena-run-{run_id}",
        )
        self._runs[run_id] = ActiveRun(orchestrator, task, cancel_event)
        task.add_done_callback(lambda _: self._runs.pop(run_id, None))

        logger.info(
            "runner.started",
            run_id=run_id,
            market=config.market,
            timeframe=config.timeframe,
            models=len(models),
        )
        return run_id

    async def _execute(
        self,
        orchestrator: SimulationOrchestrator,
        models: List[ModelSpec],
        cancel_event: asyncio.Event,
    ) -> RunInfo:
        try:
            return await orchestrator.execute(models, cancel_event)
        finally:
            await orchestrator.close()

    async def stop(self, run_id: str) -> RunInfo:
        """
        Ask a run to stop at the next candle boundary.

        Raises:
            RunNotFoundError: Unknown run
            RunStateError: Run is not pending or running
        """
        run = await self.database.get_run(run_id)
        active = self._runs.get(run_id)

        if run is None and active is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        if active is not None:
            active.cancel_event.set()
            logger.info("runner.stop_requested", run_id=run_id)
            await self.database.add_log(run_log(run_id, "Stop requested"))
            return run or active.orchestrator.run_info

        if not run.status.is_active:
            raise RunStateError(f"Run {run_id} is not active (status: {run.status.value})")

        # Row left active by a process that is gone
        updated = await self.database.update_run(
            run_id, status=RunStatus.COMPLETED, completed_at=utc_now()
        )
        await self.database.add_log(
            run_log(run_id, "Run stopped without an active worker", level=LogLevel.WARNING)
        )
        logger.warning("runner.stopped_orphan", run_id=run_id)
        return updated

    async def stop_all(self) -> List[str]:
        """Signal every active run to stop."""
        run_ids = list(self._runs)
        for run_id in run_ids:
            await self.stop(run_id)
        return run_ids

    def active_runs(self) -> List[str]:
        """IDs of runs executing in this process."""
        return [run_id for run_id, active in self._runs.items() if not active.task.done()]

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> RunInfo:
        """Wait for an in-process run to finish and return its final row."""
        active = self._runs.get(run_id)
        if active is not None:
            await asyncio.wait_for(asyncio.shield(active.task), timeout=timeout)

        run = await self.database.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    async def status(self, run_id: str) -> Dict[str, Any]:
        """
        Progress, leaderboard and recent logs of a run.

        Returns:
            Dictionary with run, progress_pct, duration_seconds, is_active,
            leaderboard and recent_logs
        """
        run = await self.database.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        states = await self.database.get_model_states(run_id)
        logs = await self.database.get_logs(run_id, limit=RECENT_LOG_LIMIT)

        active = self._runs.get(run_id)
        labels = None
        if active is not None:
            labels = {
                model_id: p.spec.label
                for model_id, p in active.orchestrator.participants.items()
            }

        initial_balance = run.initial_balance or Decimal("0")

        return {
            "run": run.model_dump(mode="json"),
            "progress_pct": run.progress_pct,
            "duration_seconds": run.duration_seconds,
            "is_active": run_id in self.active_runs(),
            "leaderboard": build_leaderboard(states, initial_balance, labels=labels),
            "recent_logs": [log.model_dump(mode="json") for log in logs],
        }

    async def results(self, run_id: str) -> List[Dict[str, Any]]:
        """
        Ranked performance metrics of every model in a run.

        Returns:
            Rows best first, each with model_id, metrics, risk_score, grade
            and the (peak, trough) candle indices of the deepest drawdown
        """
        run = await self.database.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        initial_balance = run.initial_balance or Decimal("0")
        by_model = {}
        drawdown_periods = {}
        for state in await self.database.get_model_states(run_id):
            history = await self.database.get_equity_history(run_id, state.model_id)
            drawdown_periods[state.model_id] = calculate_max_drawdown(history)[1]
            trades = await self.database.get_trades(run_id, model_id=state.model_id)
            by_model[state.model_id] = calculate_metrics(
                state,
                history,
                initial_balance,
                trades=[t for t in trades if t.executed],
                timeframe=run.timeframe,
            )

        model_ids = {id(m): model_id for model_id, m in by_model.items()}
        return [
            {
                "model_id": model_ids[id(m)],
                "metrics": m,
                "risk_score": calculate_risk_score(m),
                "grade": get_performance_grade(m),
                "drawdown_period": drawdown_periods[model_ids[id(m)]],
            }
            for m in rank_performance(list(by_model.values()))
        ]

    async def portfolio(self, run_id: str) -> PortfolioMetrics:
        """Cross-model comparison statistics for a run."""
        rows = await self.results(run_id)
        return calculate_portfolio_metrics([row["metrics"] for row in rows])

    async def shutdown(self, timeout: Optional[float] = None):
        """Stop all runs, wait for them and release the candle feed."""
        tasks = [active.task for active in self._runs.values()]
        await self.stop_all()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logger.warning("runner.shutdown_cancelling", runs=len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        await self.candle_feed.close()
        logger.info("runner.shutdown", runs=len(tasks))
