"""Pytest fixtures and utilities for the arena engine test suite."""
import asyncio
from decimal import Decimal
from typing import Any, Callable, Dict, List, Sequence, Union

import pytest
import pytest_asyncio

from arena.core.config import ProviderAPIConfig, SimulationDefaultsConfig
from arena.core.models import (
    AccountState, Candle, ModelSpec, ModelState, SimulationConfig, TradeDecision
)
from arena.execution import TradeExecutor
from arena.providers import DecisionProvider
from arena.risk import RiskEngine
from arena.storage.database import Database

HOUR_MS = 60 * 60 * 1000
BASE_TIMESTAMP = 1_700_000_000_000


# =============================================================================
# Test Doubles
# =============================================================================

Script = Union[TradeDecision, Dict[str, Any], BaseException, str, None]


class ScriptedProvider(DecisionProvider):
    """Provider replaying a fixed list of answers, one per call.

    Each entry may be a TradeDecision, a raw dict (sanitized like a backend
    answer), a string (parsed like response text), an exception (raised from
    ``_complete``) or None for HOLD. Calls past the end of the script HOLD.
    """

    name = "scripted"

    def __init__(self, script: Sequence[Script] = (), delay: float = 0.0, **kwargs):
        super().__init__(model_name="scripted", **kwargs)
        self.script = list(script)
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def decide(self, window, account, config) -> TradeDecision:
        index = len(self.calls)
        self.calls.append({"window": list(window), "account": account, "config": config})
        entry = self.script[index] if index < len(self.script) else None

        if isinstance(entry, TradeDecision):
            return entry
        if isinstance(entry, dict):
            return TradeDecision.sanitize(entry, config.max_leverage)
        if entry is None:
            return TradeDecision.hold("scripted hold")

        self._next = entry
        return await super().decide(window, account, config)

    async def _complete(self, prompt: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        entry = self._next
        if isinstance(entry, BaseException):
            raise entry
        return entry


class RaisingProvider(DecisionProvider):
    """Provider that breaks its contract by raising from ``decide``."""

    name = "raising"

    async def decide(self, window, account, config) -> TradeDecision:
        raise RuntimeError("provider exploded")

    async def _complete(self, prompt: str) -> str:
        raise RuntimeError("unused")


class StaticCandleFeed:
    """Candle feed serving a fixed list."""

    def __init__(self, candles: List[Candle]):
        self.candles = list(candles)
        self.requests: List[tuple] = []
        self.closed = False

    async def fetch_candles(self, market: str, timeframe: str, limit: int = 1000) -> List[Candle]:
        self.requests.append((market, timeframe, limit))
        return self.candles[-limit:] if limit else []

    async def close(self):
        self.closed = True


# =============================================================================
# Helper Functions
# =============================================================================

def make_candle(close: Any, index: int = 0, spread: Any = "1") -> Candle:
    """Candle with open == close and a symmetric high/low spread."""
    close = Decimal(str(close))
    spread = Decimal(str(spread))
    return Candle(
        timestamp=BASE_TIMESTAMP + index * HOUR_MS,
        open=close,
        high=close + spread,
        low=max(close - spread, Decimal("0.01")),
        close=close,
        volume=Decimal("100"),
    )


def make_candles(closes: Sequence[Any]) -> List[Candle]:
    """Candles with the given closes, one hour apart."""
    return [make_candle(close, i) for i, close in enumerate(closes)]


def decision(action: str, leverage: int = 1, size_pct: Any = "0.5", reason: str = "test") -> TradeDecision:
    """Shorthand for a sanitized decision."""
    return TradeDecision.sanitize(
        {"action": action, "leverage": leverage, "size_pct": str(size_pct), "reason": reason},
        max_leverage=100,
    )


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def sim_config():
    """Competition parameters used by the reference scenarios."""
    return SimulationConfig(
        market="BTC",
        timeframe="1h",
        initial_balance=Decimal("10000"),
        max_leverage=10,
        fee_rate=Decimal("0.001"),
        slippage_rate=Decimal("0.0005"),
        liquidation_threshold=Decimal("0.5"),
    )


@pytest.fixture
def tight_liquidation_config(sim_config):
    """Config liquidating at a 5% drawdown from peak."""
    return sim_config.model_copy(update={"liquidation_threshold": Decimal("0.05")})


@pytest.fixture
def provider_api_config():
    """Provider settings with no keys and a short timeout."""
    return ProviderAPIConfig(
        openai_api_key="",
        anthropic_api_key="",
        google_api_key="",
        xai_api_key="",
        deepseek_api_key="",
        request_timeout=0.5,
        retry_attempts=1,
    )


@pytest.fixture
def simulation_defaults_config():
    """Engine tuning for fast tests."""
    return SimulationDefaultsConfig(
        candle_limit=50,
        window_size=10,
        prompt_candles=5,
        cache_ttl_seconds=300,
        progress_log_interval=10,
    )


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def fresh_state():
    """Ledger at run start with 10000 balance."""
    return ModelState.initial("model-a", Decimal("10000"))


@pytest.fixture
def account_state(fresh_state) -> AccountState:
    return fresh_state.to_account_state()


@pytest.fixture
def sample_candles() -> List[Candle]:
    """Sixty gently oscillating candles around 100."""
    closes = [Decimal("100") + Decimal(str((i % 10) - 5)) for i in range(60)]
    return make_candles(closes)


@pytest.fixture
def model_specs() -> List[ModelSpec]:
    return [
        ModelSpec(id="model-a", display_name="Model A", provider="random"),
        ModelSpec(id="model-b", display_name="Model B", provider="random"),
    ]


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def executor(sim_config):
    return TradeExecutor(sim_config)


@pytest.fixture
def risk_engine(sim_config):
    return RiskEngine(sim_config)


@pytest_asyncio.fixture
async def test_database(tmp_path):
    """Create a file-backed test database."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'arena_test.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def scripted_provider() -> Callable[..., ScriptedProvider]:
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider


@pytest.fixture
def raising_provider() -> Callable[..., RaisingProvider]:
    return RaisingProvider


@pytest.fixture
def static_feed() -> Callable[[List[Candle]], StaticCandleFeed]:
    return StaticCandleFeed


@pytest.fixture
def candles_from() -> Callable[[Sequence[Any]], List[Candle]]:
    return make_candles


@pytest.fixture
def make_decision() -> Callable[..., TradeDecision]:
    return decision


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        # Add unit marker by default
        if not any(marker.name in ["unit", "integration"] for marker in item.own_markers):
            item.add_marker(pytest.mark.unit)
