"""Integration tests for the arena simulation.

These tests verify the interaction between multiple components:
- SimulationOrchestrator candle loop
- TradeExecutor and RiskEngine applied per model
- Per-model failure isolation
- Database persistence of trades, snapshots, ledgers and logs
- RunController start / stop / status / results
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from arena.core.engine import SimulationOrchestrator, build_leaderboard
from arena.core.exceptions import (
    ConfigurationError,
    RunNotFoundError,
    RunStateError,
)
from arena.core.models import (
    ModelSpec,
    ModelState,
    PositionSide,
    RecordAction,
    RunInfo,
    RunStatus,
    TradeDecision,
)
from arena.core.runner import RunController
from arena.providers import DecisionProvider


class CancellingProvider(DecisionProvider):
    """HOLDs forever and sets ``event`` on its N-th call."""

    name = "cancelling"

    def __init__(self, event: asyncio.Event, after: int):
        super().__init__(model_name="cancelling")
        self.event = event
        self.after = after
        self.calls = 0

    async def decide(self, window, account, config):
        self.calls += 1
        if self.calls == self.after:
            self.event.set()
        return TradeDecision.hold("waiting")

    async def _complete(self, prompt):
        return ""


def assert_ledger_invariants(state: ModelState, previous_max_drawdown=Decimal("0")):
    assert state.equity == state.balance + state.unrealized_pnl
    if state.position_side == PositionSide.NONE:
        assert state.position_size == 0
        assert state.position_entry_price is None
        assert state.unrealized_pnl == 0
    assert Decimal("0") <= state.max_drawdown <= Decimal("1")
    assert state.max_drawdown >= previous_max_drawdown


@pytest.fixture
def build_orchestrator(sim_config, static_feed):
    """Factory wiring scripted providers to an orchestrator."""
    def factory(providers, candles, config=None, database=None, **kwargs):
        specs = [
            ModelSpec(id=model_id, display_name=model_id.upper(), provider="scripted")
            for model_id in providers
        ]
        orchestrator = SimulationOrchestrator(
            config or sim_config,
            static_feed(candles),
            database=database,
            provider_factory=lambda spec: providers[spec.id],
            candle_limit=len(candles),
            window_size=kwargs.pop("window_size", 10),
            **kwargs,
        )
        return orchestrator, specs
    return factory


# =============================================================================
# Candle Loop Tests
# =============================================================================

class TestCandleLoop:
    """Test per-candle processing without persistence."""

    @pytest.mark.asyncio
    async def test_invariants_hold_every_candle(
        self, build_orchestrator, scripted_provider, sample_candles, make_decision
    ):
        script_a = [make_decision("LONG", 5, "0.5"), None, make_decision("SHORT", 3, "0.4"),
                    None, make_decision("CLOSE")] * 12
        script_b = [make_decision("SHORT", 10, "1"), None, None, make_decision("LONG", 2, "0.2")] * 15
        orchestrator, specs = build_orchestrator(
            {"a": scripted_provider(script_a), "b": scripted_provider(script_b)}, sample_candles
        )
        await orchestrator.initialize(specs)

        previous = {model_id: Decimal("0") for model_id in orchestrator.participants}
        for index in range(len(sample_candles)):
            await orchestrator.process_candle(index)
            for model_id, participant in orchestrator.participants.items():
                assert_ledger_invariants(participant.state, previous[model_id])
                previous[model_id] = participant.state.max_drawdown

        for model_id in ("a", "b"):
            history = orchestrator.equity_history[model_id]
            assert [s.candle_index for s in history] == list(range(len(sample_candles)))

    @pytest.mark.asyncio
    async def test_window_ends_at_current_candle(
        self, build_orchestrator, scripted_provider, sample_candles
    ):
        provider = scripted_provider()
        orchestrator, specs = build_orchestrator({"a": provider}, sample_candles, window_size=7)

        await orchestrator.execute(specs)

        assert len(provider.calls) == len(sample_candles)
        for index, call in enumerate(provider.calls):
            window = call["window"]
            assert window[-1] == sample_candles[index]
            assert len(window) == min(index + 1, 7)

    @pytest.mark.asyncio
    async def test_reversal_records_close_and_open(
        self, build_orchestrator, scripted_provider, candles_from, make_decision
    ):
        candles = candles_from([100, 110, 110])
        provider = scripted_provider([make_decision("LONG", 5, "0.5"), make_decision("SHORT", 2, "0.5")])
        orchestrator, specs = build_orchestrator({"a": provider}, candles)

        await orchestrator.execute(specs)

        trades = orchestrator.trade_log["a"]
        assert [(t.candle_index, t.action) for t in trades] == [
            (0, RecordAction.LONG),
            (1, RecordAction.CLOSE),
            (1, RecordAction.SHORT),
        ]
        assert trades[1].pnl > 0
        assert trades[0].pnl is None
        state = orchestrator.participants["a"].state
        assert state.position_side == PositionSide.SHORT
        assert state.total_trades == 3

    @pytest.mark.asyncio
    async def test_noop_decision_recorded_as_not_executed(
        self, build_orchestrator, scripted_provider, candles_from, make_decision
    ):
        provider = scripted_provider([make_decision("CLOSE")])
        orchestrator, specs = build_orchestrator({"a": provider}, candles_from([100, 101]))

        await orchestrator.execute(specs)

        trades = orchestrator.trade_log["a"]
        assert len(trades) == 1
        assert trades[0].action == RecordAction.CLOSE
        assert trades[0].executed is False
        assert trades[0].price == Decimal("100")
        assert orchestrator.participants["a"].state.total_trades == 0

    @pytest.mark.asyncio
    async def test_liquidation_recorded(
        self, build_orchestrator, scripted_provider, candles_from, make_decision,
        tight_liquidation_config,
    ):
        candles = candles_from([100, "99.5", "99.5", "99.5"])
        provider = scripted_provider([make_decision("LONG", 10, "1")])
        orchestrator, specs = build_orchestrator(
            {"a": provider}, candles, config=tight_liquidation_config
        )

        await orchestrator.execute(specs)

        trades = orchestrator.trade_log["a"]
        assert [t.action for t in trades] == [RecordAction.LONG, RecordAction.LIQUIDATION]
        liquidation = trades[1]
        assert liquidation.candle_index == 1
        assert liquidation.pnl < 0
        assert liquidation.fee == 0

        state = orchestrator.participants["a"].state
        assert state.is_flat
        assert state.equity == state.balance
        assert state.total_trades == 2
        assert orchestrator.equity_history["a"][1].equity == state.balance

    @pytest.mark.asyncio
    async def test_opening_costs_liquidate_on_same_candle(
        self, build_orchestrator, scripted_provider, candles_from, make_decision, sim_config
    ):
        # Fee 100 plus slippage ~50 on a 10x full-size open breaches a 1% threshold
        config = sim_config.model_copy(update={"liquidation_threshold": Decimal("0.01")})
        candles = candles_from([100, 100])
        provider = scripted_provider([make_decision("LONG", 10, "1")])
        orchestrator, specs = build_orchestrator({"a": provider}, candles, config=config)

        await orchestrator.execute(specs)

        trades = orchestrator.trade_log["a"]
        assert [(t.candle_index, t.action) for t in trades] == [
            (0, RecordAction.LONG),
            (0, RecordAction.LIQUIDATION),
        ]
        state = orchestrator.participants["a"].state
        assert state.is_flat
        assert state.balance < Decimal("9900")
        assert orchestrator.equity_history["a"][0].equity == state.balance
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_raising_provider_isolated(
        self, build_orchestrator, scripted_provider, raising_provider, candles_from, make_decision
    ):
        candles = candles_from([100, 105, 110])
        orchestrator, specs = build_orchestrator(
            {"bad": raising_provider(), "good": scripted_provider([make_decision("LONG", 2, "0.5")])},
            candles,
        )

        run = await orchestrator.execute(specs)

        assert run.status == RunStatus.COMPLETED
        bad = orchestrator.participants["bad"].state
        good = orchestrator.participants["good"].state
        assert bad.balance == Decimal("10000")
        assert bad.is_flat
        assert orchestrator.trade_log["bad"] == []
        assert len(orchestrator.equity_history["bad"]) == 3
        assert good.position_side == PositionSide.LONG
        assert good.equity > good.balance

    @pytest.mark.asyncio
    async def test_malformed_response_is_hold(
        self, build_orchestrator, scripted_provider, candles_from
    ):
        provider = scripted_provider(["definitely not json", '{"action": "LONG", "size_pct": "abc"}'])
        orchestrator, specs = build_orchestrator({"a": provider}, candles_from([100, 101, 102]))

        await orchestrator.execute(specs)

        state = orchestrator.participants["a"].state
        assert state.is_flat
        assert state.total_trades == 0
        # LONG with unparsable size clamps to 0 and changes nothing
        assert [t.executed for t in orchestrator.trade_log["a"]] == [False]

    @pytest.mark.asyncio
    async def test_model_failure_rolls_back_ledger(
        self, build_orchestrator, scripted_provider, candles_from, make_decision
    ):
        orchestrator, specs = build_orchestrator(
            {
                "a": scripted_provider([make_decision("LONG", 2, "0.5")]),
                "b": scripted_provider([make_decision("LONG", 2, "0.5")]),
            },
            candles_from([100, 101]),
        )
        await orchestrator.initialize(specs)
        execute = orchestrator.executor.execute

        def flaky(state, decision, price):
            if state.model_id == "a":
                state.balance -= Decimal("999")
                raise RuntimeError("ledger bug")
            return execute(state, decision, price)

        with patch.object(orchestrator.executor, "execute", side_effect=flaky):
            outcomes = await orchestrator.process_candle(0)

        by_model = {o.model_id: o for o in outcomes}
        assert by_model["a"].error == "ledger bug"
        assert by_model["a"].decision.is_hold
        assert by_model["a"].snapshot.equity == Decimal("10000")
        assert orchestrator.participants["a"].state.balance == Decimal("10000")
        assert orchestrator.participants["b"].state.position_side == PositionSide.LONG

    @pytest.mark.asyncio
    async def test_cancellation_completes_with_partial_coverage(
        self, build_orchestrator, sample_candles
    ):
        cancel_event = asyncio.Event()
        orchestrator, specs = build_orchestrator(
            {"a": CancellingProvider(cancel_event, after=5)}, sample_candles
        )

        run = await orchestrator.execute(specs, cancel_event)

        assert run.status == RunStatus.COMPLETED
        assert run.current_candle_index == 5
        assert run.total_candles == len(sample_candles)
        assert len(orchestrator.equity_history["a"]) == 5

    @pytest.mark.asyncio
    async def test_ranking_and_leaderboard(
        self, build_orchestrator, scripted_provider, candles_from, make_decision
    ):
        candles = candles_from([100 + i for i in range(20)])
        orchestrator, specs = build_orchestrator(
            {"holder": scripted_provider(), "bull": scripted_provider([make_decision("LONG", 2, "0.5")])},
            candles,
        )

        await orchestrator.execute(specs)

        assert orchestrator.ranking() == ["bull", "holder"]
        board = orchestrator.leaderboard()
        assert [row["model_id"] for row in board] == ["bull", "holder"]
        assert board[0]["label"] == "BULL"
        assert board[0]["return_pct"] > 0
        assert board[1]["return_pct"] == 0.0

        metrics = orchestrator.compute_metrics()
        assert metrics["bull"].total_return > 0
        assert metrics["holder"].total_trades == 0


# =============================================================================
# Lifecycle Tests
# =============================================================================

class TestLifecycle:
    """Test run status transitions."""

    @pytest.mark.asyncio
    async def test_duplicate_model_ids_rejected(self, sim_config, static_feed, sample_candles):
        orchestrator = SimulationOrchestrator(sim_config, static_feed(sample_candles))
        specs = [ModelSpec(id="same", provider="random"), ModelSpec(id="same", provider="random")]

        with pytest.raises(ConfigurationError):
            await orchestrator.initialize(specs)

    @pytest.mark.asyncio
    async def test_no_enabled_models_fails_run(self, sim_config, static_feed, sample_candles):
        orchestrator = SimulationOrchestrator(sim_config, static_feed(sample_candles))

        run = await orchestrator.execute([ModelSpec(id="off", enabled=False)])

        assert run.status == RunStatus.FAILED
        assert "No enabled models" in run.error

    @pytest.mark.asyncio
    async def test_cannot_initialize_twice(self, build_orchestrator, scripted_provider, sample_candles):
        orchestrator, specs = build_orchestrator({"a": scripted_provider()}, sample_candles)
        await orchestrator.initialize(specs)

        with pytest.raises(RunStateError):
            await orchestrator.initialize(specs)

    @pytest.mark.asyncio
    async def test_empty_feed_completes(self, build_orchestrator, scripted_provider):
        orchestrator, specs = build_orchestrator({"a": scripted_provider()}, [])
        orchestrator.candle_limit = 100

        run = await orchestrator.execute(specs)

        assert run.status == RunStatus.COMPLETED
        assert run.total_candles == 0
        assert run.started_at is not None
        assert run.completed_at is not None


# =============================================================================
# Persistence Tests
# =============================================================================

class TestPersistence:
    """Test that a run is reconstructable from the database."""

    @pytest.mark.asyncio
    async def test_full_run_persisted(
        self, build_orchestrator, scripted_provider, test_database, sample_candles, make_decision
    ):
        orchestrator, specs = build_orchestrator(
            {
                "a": scripted_provider([make_decision("LONG", 3, "0.5"), None, make_decision("CLOSE")]),
                "b": scripted_provider(),
            },
            sample_candles,
            database=test_database,
        )
        await orchestrator.create_run()

        await orchestrator.execute(specs)

        run = await test_database.get_run(orchestrator.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.current_candle_index == len(sample_candles)
        assert run.total_candles == len(sample_candles)
        assert run.started_at is not None and run.completed_at is not None

        states = {s.model_id: s for s in await test_database.get_model_states(run.id)}
        assert set(states) == {"a", "b"}
        assert states["a"].total_trades == 2
        assert float(states["a"].equity) == pytest.approx(
            float(orchestrator.participants["a"].state.equity)
        )

        for model_id in ("a", "b"):
            history = await test_database.get_equity_history(run.id, model_id)
            assert len(history) == len(sample_candles)

        trades = await test_database.get_trades(run.id, model_id="a")
        assert [t.action for t in trades] == [RecordAction.LONG, RecordAction.CLOSE]

        messages = [log.message for log in await test_database.get_logs(run.id, limit=50)]
        assert any(m.startswith("Simulation started") for m in messages)
        assert any(m.startswith("Simulation completed") for m in messages)

    @pytest.mark.asyncio
    async def test_model_error_logged(
        self, build_orchestrator, scripted_provider, test_database, candles_from
    ):
        orchestrator, specs = build_orchestrator(
            {"a": scripted_provider()}, candles_from([100, 101]), database=test_database
        )
        await orchestrator.create_run()
        await orchestrator.initialize(specs)

        with patch.object(orchestrator.executor, "execute", side_effect=RuntimeError("ledger bug")):
            await orchestrator.process_candle(0)

        logs = await test_database.get_logs(orchestrator.run_id)
        assert logs[0].model_id == "a"
        assert "ledger bug" in logs[0].message

    @pytest.mark.asyncio
    async def test_persistence_failure_fails_run(
        self, build_orchestrator, scripted_provider, test_database, sample_candles
    ):
        orchestrator, specs = build_orchestrator(
            {"a": scripted_provider()}, sample_candles, database=test_database
        )
        await orchestrator.create_run()

        with patch.object(
            test_database, "save_equity_snapshots", AsyncMock(side_effect=RuntimeError("disk full"))
        ):
            run = await orchestrator.execute(specs)

        assert run.status == RunStatus.FAILED
        assert run.error == "disk full"

        stored = await test_database.get_run(orchestrator.run_id)
        assert stored.status == RunStatus.FAILED
        assert stored.error == "disk full"
        assert stored.current_candle_index == 0


# =============================================================================
# RunController Tests
# =============================================================================

@pytest.fixture
def controller(test_database, static_feed, sample_candles, provider_api_config, simulation_defaults_config):
    return RunController(
        test_database,
        candle_feed=static_feed(sample_candles),
        providers=provider_api_config,
        defaults=simulation_defaults_config,
    )


@pytest.fixture
def slow_providers(controller, scripted_provider):
    """Replace the provider factory with slow HOLD providers."""
    def factory(seed):
        return lambda spec: scripted_provider(['{"action": "HOLD"}'] * 100, delay=0.02, timeout=1.0)
    controller._provider_factory = factory
    return controller


class TestRunController:
    """Test the run control surface."""

    @pytest.mark.asyncio
    async def test_start_wait_status(self, controller, sim_config, model_specs):
        run_id = await controller.start(sim_config, model_specs, seed=42)

        run = await controller.wait(run_id, timeout=10)

        assert run.status == RunStatus.COMPLETED
        assert run.total_candles == 50

        status = await controller.status(run_id)
        assert status["run"]["id"] == run_id
        assert status["run"]["status"] == "completed"
        assert status["progress_pct"] == 100.0
        assert status["is_active"] is False
        assert status["duration_seconds"] is not None
        assert {row["model_id"] for row in status["leaderboard"]} == {"model-a", "model-b"}
        assert 0 < len(status["recent_logs"]) <= 10

        await controller.shutdown()

    @pytest.mark.asyncio
    async def test_results_ranked_with_grades(self, controller, sim_config, model_specs):
        run_id = await controller.start(sim_config, model_specs, seed=7)
        await controller.wait(run_id, timeout=10)

        results = await controller.results(run_id)

        assert {row["model_id"] for row in results} == {"model-a", "model-b"}
        returns = [row["metrics"].total_return for row in results]
        assert returns[0] >= returns[1] - 0.01
        for row in results:
            assert row["grade"] in {"A+", "A", "B+", "B", "C+", "C", "D", "F"}
            assert 0 <= row["risk_score"] <= 100
            peak, trough = row["drawdown_period"]
            assert 0 <= peak <= trough < 50

    @pytest.mark.asyncio
    async def test_portfolio_summarizes_results(self, controller, sim_config, model_specs):
        run_id = await controller.start(sim_config, model_specs, seed=7)
        await controller.wait(run_id, timeout=10)

        results = await controller.results(run_id)
        portfolio = await controller.portfolio(run_id)

        returns = [row["metrics"].total_return for row in results]
        assert portfolio.best_performer == round(max(returns), 2)
        assert portfolio.worst_performer == round(min(returns), 2)
        assert portfolio.worst_performer <= portfolio.average_return <= portfolio.best_performer
        assert 0.0 <= portfolio.correlation <= 1.0

    @pytest.mark.asyncio
    async def test_portfolio_unknown_run(self, controller):
        with pytest.raises(RunNotFoundError):
            await controller.portfolio("missing")

    @pytest.mark.asyncio
    async def test_seeded_runs_reproducible(self, controller, sim_config, model_specs, test_database):
        first = await controller.start(sim_config, model_specs, seed=42)
        await controller.wait(first, timeout=10)
        second = await controller.start(sim_config, model_specs, seed=42)
        await controller.wait(second, timeout=10)

        first_states = await test_database.get_model_states(first)
        second_states = await test_database.get_model_states(second)

        assert [(s.model_id, s.balance, s.total_trades) for s in first_states] == [
            (s.model_id, s.balance, s.total_trades) for s in second_states
        ]

    @pytest.mark.asyncio
    async def test_stop_active_run(self, slow_providers, sim_config, model_specs):
        controller = slow_providers
        run_id = await controller.start(sim_config, model_specs)
        await asyncio.sleep(0.2)

        assert run_id in controller.active_runs()
        await controller.stop(run_id)
        run = await controller.wait(run_id, timeout=10)

        assert run.status == RunStatus.COMPLETED
        assert 0 < run.current_candle_index < run.total_candles
        assert controller.active_runs() == []

        messages = [log.message for log in (await controller.status(run_id))["recent_logs"]]
        assert "Stop requested" in messages

    @pytest.mark.asyncio
    async def test_stop_unknown_run(self, controller):
        with pytest.raises(RunNotFoundError):
            await controller.stop("missing")

    @pytest.mark.asyncio
    async def test_stop_finished_run(self, controller, sim_config, model_specs):
        run_id = await controller.start(sim_config, model_specs, seed=1)
        await controller.wait(run_id, timeout=10)

        with pytest.raises(RunStateError):
            await controller.stop(run_id)

    @pytest.mark.asyncio
    async def test_stop_orphaned_run(self, controller, test_database):
        orphan = RunInfo(status=RunStatus.RUNNING, initial_balance=Decimal("10000"))
        await test_database.create_run(orphan)

        run = await controller.stop(orphan.id)

        assert run.status == RunStatus.COMPLETED
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_start_without_enabled_models(self, controller, sim_config):
        with pytest.raises(ConfigurationError):
            await controller.start(sim_config, [ModelSpec(id="off", enabled=False)])

    @pytest.mark.asyncio
    async def test_status_unknown_run(self, controller):
        with pytest.raises(RunNotFoundError):
            await controller.status("missing")

    @pytest.mark.asyncio
    async def test_shutdown_stops_runs(self, slow_providers, sim_config, model_specs, test_database):
        controller = slow_providers
        run_id = await controller.start(sim_config, model_specs)
        await asyncio.sleep(0.05)

        await controller.shutdown(timeout=10)

        run = await test_database.get_run(run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.current_candle_index < run.total_candles

    @pytest.mark.asyncio
    async def test_shutdown_cancels_runs_past_timeout(
        self, controller, scripted_provider, sim_config, model_specs
    ):
        # Each decision outlasts the shutdown wait, so the stop signal is never observed
        controller._provider_factory = lambda seed: (
            lambda spec: scripted_provider(['{"action": "HOLD"}'], delay=5.0, timeout=10.0)
        )
        run_id = await controller.start(sim_config, model_specs)
        await asyncio.sleep(0.05)
        task = controller._runs[run_id].task

        await controller.shutdown(timeout=0.1)

        assert task.done()
        assert task.cancelled()
        assert controller.active_runs() == []
        assert controller.candle_feed.closed is True


class TestBuildLeaderboard:
    def test_sorted_by_equity(self):
        rich = ModelState.initial("rich", Decimal("12000"))
        poor = ModelState.initial("poor", Decimal("8000"))

        rows = build_leaderboard([poor, rich], Decimal("10000"), labels={"rich": "Rich"})

        assert [row["model_id"] for row in rows] == ["rich", "poor"]
        assert rows[0]["label"] == "Rich"
        assert rows[1]["label"] == "poor"
        assert rows[0]["return_pct"] == 20.0
        assert rows[1]["return_pct"] == -20.0
