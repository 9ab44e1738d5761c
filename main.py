"""
Arena Engine - Main Entry Point

Candle-by-candle leveraged-trading competition between decision models.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Run a competition on BTC 1h candles with two random models
    python main.py --run --market BTC --timeframe 1h --candles 500 \
        --models random:alpha,random:beta --seed 42

    # Pit hosted models against each other
    python main.py --run --models openai:gpt-4o-mini,anthropic:claude-3-5-haiku-latest

    # Show status of a run
    python main.py --status <run_id>

    # List recent runs
    python main.py --list-runs
"""

import argparse
import asyncio
import signal
from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from arena.core.config import arena_config
from arena.core.exceptions import ArenaError, ConfigurationError
from arena.core.models import ModelSpec, RunStatus
from arena.core.runner import RunController
from arena.market.candle_feed import CandleCache, CandleFeed
from arena.metrics import PortfolioMetrics
from arena.providers import PROVIDER_NAMES
from arena.storage.database import Database
from arena.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def parse_models(value: str) -> List[ModelSpec]:
    """
    Parse ``provider:model[,provider:model...]`` into model specs.

    A bare provider name (``random``) uses the provider name as model name.
    Duplicate entries get a numeric suffix so ids stay unique.
    """
    specs = []
    seen: Dict[str, int] = {}

    for item in value.split(","):
        item = item.strip()
        if not item:
            continue

        provider, _, model_name = item.partition(":")
        provider = provider.strip().lower()
        model_name = model_name.strip() or provider

        if provider not in PROVIDER_NAMES:
            raise ConfigurationError(
                f"Unknown provider '{provider}'. Valid: {', '.join(PROVIDER_NAMES)}"
            )

        base_id = f"{provider}:{model_name}"
        seen[base_id] = seen.get(base_id, 0) + 1
        model_id = base_id if seen[base_id] == 1 else f"{base_id}#{seen[base_id]}"

        specs.append(
            ModelSpec(
                id=model_id,
                display_name=model_id,
                provider=provider,
                model_name=model_name,
            )
        )

    if not specs:
        raise ConfigurationError("At least one model is required")
    return specs


class ArenaApp:
    """
    Main application for the arena.

    Wires database, candle feed and run controller together and
    drives a single run from the command line.
    """

    def __init__(self, offline: bool = False, mock_seed: Optional[int] = None):
        self.offline = offline
        self.mock_seed = mock_seed

        # Components
        self.database: Optional[Database] = None
        self.controller: Optional[RunController] = None

        # State
        self._stop_tasks = set()

    async def initialize(self):
        """Initialize all components based on configuration."""
        self.database = Database()
        await self.database.initialize()
        logger.info("app.database_initialized")

        candle_feed = CandleFeed(
            cache=CandleCache(ttl_seconds=arena_config.simulation.cache_ttl_seconds),
            mock_seed=self.mock_seed,
            offline=self.offline,
        )
        self.controller = RunController(
            self.database,
            candle_feed=candle_feed,
            providers=arena_config.providers,
            defaults=arena_config.simulation,
        )
        logger.info("app.initialized", offline=self.offline)

    async def run_competition(
        self,
        market: str,
        timeframe: str,
        candles: int,
        models: List[ModelSpec],
        seed: Optional[int] = None,
        initial_balance: Optional[Decimal] = None,
        max_leverage: Optional[int] = None,
    ) -> str:
        """Run one competition to completion and return its run id."""
        config = arena_config.simulation.to_simulation_config(market=market, timeframe=timeframe)
        overrides = {}
        if initial_balance is not None:
            overrides["initial_balance"] = initial_balance
        if max_leverage is not None:
            overrides["max_leverage"] = max_leverage
        if overrides:
            try:
                config = config.model_validate({**config.model_dump(), **overrides})
            except ValueError as e:
                raise ConfigurationError(f"Invalid simulation config: {e}") from e

        run_id = await self.controller.start(config, models, seed=seed, candle_limit=candles)
        print(f"\n▶ Run {run_id} started ({len(models)} models, {market} {timeframe})")

        # Setup signal handlers for graceful stop
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler, run_id)

        try:
            await self.controller.wait(run_id)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

        return run_id

    def _signal_handler(self, run_id: str):
        """Handle stop signals."""
        logger.info("app.stop_signal_received", run_id=run_id)
        print("\n⏹  Stop requested - finishing current candle...")
        task = asyncio.create_task(self.controller.stop(run_id))
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_tasks.discard)

    async def shutdown(self):
        """Perform graceful shutdown."""
        if self.controller:
            await self.controller.shutdown()
        if self.database:
            await self.database.close()
        logger.info("app.shutdown_complete")


def check_configuration() -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = arena_config.validate_configuration()
    return {
        **validation,
        "configured_providers": arena_config.configured_providers,
        "database_url": arena_config.database.database_url,
    }


def print_status(status: Dict):
    """Print formatted run status."""
    run = status["run"]
    print("\n" + "=" * 60)
    print("           ARENA RUN STATUS")
    print("=" * 60)

    print(f"\n🆔 Run: {run['id']}")
    print(f"📊 Status: {run['status'].upper()}")
    print(f"🕯  Progress: {run['current_candle_index']}/{run['total_candles']} "
          f"({status['progress_pct']}%)")
    if status.get("duration_seconds") is not None:
        print(f"⏱  Duration: {status['duration_seconds']}s")
    if run.get("error"):
        print(f"✗ Error: {run['error']}")

    leaderboard = status.get("leaderboard", [])
    if leaderboard:
        print("\n🏆 Leaderboard:")
        for rank, row in enumerate(leaderboard, start=1):
            print(
                f"   {rank}. {row['label']:<28} equity {row['equity']:>12,.2f}  "
                f"return {row['return_pct']:>7.2f}%  win {row['win_rate']:>6.2f}%  "
                f"dd {row['max_drawdown_pct']:>6.2f}%"
            )

    logs = status.get("recent_logs", [])
    if logs:
        print("\n📝 Recent Logs:")
        for entry in logs:
            model = f" [{entry['model_id']}]" if entry.get("model_id") else ""
            print(f"   {entry['created_at']} {entry['level'].upper()}{model}: {entry['message']}")

    print("\n" + "=" * 60)


def print_results(results: List[Dict]):
    """Print ranked metrics with grades."""
    print("\n" + "=" * 60)
    print("           FINAL RANKING")
    print("=" * 60)

    for rank, row in enumerate(results, start=1):
        m = row["metrics"]
        print(f"\n{rank}. {row['model_id']}  [{row['grade']}]  risk {row['risk_score']}/100")
        print(f"   Return:       {m.total_return:>9.2f}%  ({m.total_return_usd:,.2f} USD)")
        print(f"   Final equity: {m.final_equity:>12,.2f}  (peak {m.peak_equity:,.2f})")
        print(f"   Sharpe:       {m.sharpe_ratio:>9.3f}   Sortino {m.sortino_ratio:.3f}   "
              f"Calmar {m.calmar_ratio:.3f}")
        peak, trough = row["drawdown_period"]
        print(f"   Max DD:       {m.max_drawdown:>9.2f}%  (candles {peak}-{trough})  "
              f"Volatility {m.volatility:.2f}%")
        print(f"   Trades:       {m.total_trades:>9}   Win rate {m.win_rate:.2f}%   "
              f"Profit factor {m.profit_factor}")

    print("\n" + "=" * 60)


def print_portfolio(portfolio: PortfolioMetrics):
    """Print cross-model comparison statistics."""
    print("\nPORTFOLIO")
    print(f"   Average return:  {portfolio.average_return:>8.2f}%")
    print(f"   Best / worst:    {portfolio.best_performer:>8.2f}% / {portfolio.worst_performer:.2f}%")
    print(f"   Correlation:     {portfolio.correlation:>8.3f}")
    print(f"   Diversification: {portfolio.diversification_benefit:>8.2f}%")
    print("=" * 60)


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Arena Engine - multi-model leveraged trading simulation"
    )

    # Actions
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument("--run", action="store_true", help="Run a competition")
    parser.add_argument("--status", metavar="RUN_ID", help="Show status of a run and exit")
    parser.add_argument("--list-runs", action="store_true", help="List recent runs and exit")

    # Competition
    parser.add_argument("--market", default=arena_config.simulation.market)
    parser.add_argument("--timeframe", default=arena_config.simulation.timeframe)
    parser.add_argument(
        "--candles", type=int, default=arena_config.simulation.candle_limit,
        help="Number of candles to simulate",
    )
    parser.add_argument(
        "--models", default="random:alpha,random:beta",
        help="Comma-separated provider:model list",
    )
    parser.add_argument("--seed", type=int, help="Seed for random models and mock candles")
    parser.add_argument("--balance", type=Decimal, help="Initial balance per model")
    parser.add_argument("--max-leverage", type=int, help="Maximum leverage")
    parser.add_argument(
        "--offline", action="store_true", help="Use generated candles instead of the exchange"
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging()

    config_check = check_configuration()

    for warning in config_check["warnings"]:
        print(f"⚠️  {warning}")

    # Handle --check
    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        providers = config_check["configured_providers"]
        print(f"\nConfigured Providers: {', '.join(providers) if providers else 'none'}")
        print(f"Database: {config_check['database_url']}")

        print("\n" + "=" * 60)
        return

    # If config is invalid, exit early
    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    # Handle --init-db
    if args.init_db:
        print("\n📦 Initializing database...")
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    if not (args.run or args.status or args.list_runs):
        parser.print_help()
        return

    app = ArenaApp(offline=args.offline, mock_seed=args.seed)

    try:
        await app.initialize()

        # Handle --status
        if args.status:
            print_status(await app.controller.status(args.status))
            return

        # Handle --list-runs
        if args.list_runs:
            runs = await app.database.list_runs(limit=20)
            if not runs:
                print("\nNo runs recorded")
            for run in runs:
                print(
                    f"{run.id}  {run.status.value:<10} {run.market or '-':<6} "
                    f"{run.timeframe or '-':<4} {run.current_candle_index}/{run.total_candles}"
                )
            return

        models = parse_models(args.models)
        run_id = await app.run_competition(
            market=args.market,
            timeframe=args.timeframe,
            candles=args.candles,
            models=models,
            seed=args.seed,
            initial_balance=args.balance,
            max_leverage=args.max_leverage,
        )

        status = await app.controller.status(run_id)
        print_status(status)
        if status["run"]["status"] != RunStatus.FAILED.value:
            print_results(await app.controller.results(run_id))
            print_portfolio(await app.controller.portfolio(run_id))

    except ArenaError as e:
        logger.error("main.arena_error", error=str(e))
        print(f"\n✗ {e}")
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise
    finally:
        await app.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
