"""
Decision provider interface.

A DecisionProvider turns (candle window, account state, competition config)
into a TradeDecision. ``decide`` never raises: timeouts, transport errors and
unparsable answers all resolve to a HOLD decision carrying a diagnostic reason.
"""

import asyncio
import json
import math
import re
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import structlog

from arena.core.exceptions import ProviderError, ProviderTimeoutError
from arena.core.models import AccountState, Candle, SimulationConfig, TradeDecision
from arena.market.indicators import (
    calculate_ema,
    calculate_rsi,
    calculate_sma,
    calculate_volatility,
)
from arena.metrics.calculator import periods_per_year

logger = structlog.get_logger(__name__)

DEFAULT_PROMPT_CANDLES = 20

TIMEOUT_REASON = "Timeout - defaulting to HOLD"
PARSE_ERROR_REASON = "Parse error - defaulting to HOLD"
EMPTY_WINDOW_REASON = "No market data - defaulting to HOLD"

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _money(value) -> str:
    return f"{float(value):.2f}"


def _pct(value, digits: int) -> str:
    return f"{float(value) * 100:.{digits}f}"


def build_prompt(
    window: Sequence[Candle],
    account: AccountState,
    config: SimulationConfig,
    prompt_candles: int = DEFAULT_PROMPT_CANDLES,
    strategy_mode: Optional[str] = None,
) -> str:
    """Render the trading prompt sent to text-completion backends."""
    recent = list(window)[-prompt_candles:]
    current_price = window[-1].close if window else None

    candle_lines = "\n".join(
        f"{i + 1}: O:{c.open} H:{c.high} L:{c.low} C:{c.close} V:{c.volume}"
        for i, c in enumerate(recent)
    )

    entry_price = (
        f"${_money(account.position_entry_price)}"
        if account.position_entry_price is not None
        else "None"
    )
    win_rate = (
        f"{float(account.win_rate_pct):.1f}" if account.total_trades > 0 else "0"
    )

    sections = [
        f"You are an AI trading model participating in a {config.market} trading competition.",
    ]
    if strategy_mode:
        sections += ["", f"TRADING STYLE: {strategy_mode}"]

    sections += [
        "",
        f"MARKET DATA ({config.timeframe} timeframe):",
        f"Current Price: ${current_price}",
        "Recent Candles (most recent last):",
        candle_lines,
    ]

    indicators = _indicator_lines(window, config.timeframe)
    if indicators:
        sections += ["", "INDICATORS:"] + indicators

    sections += [
        "",
        "ACCOUNT STATE:",
        f"Balance: ${_money(account.balance)}",
        f"Equity: ${_money(account.equity)}",
        f"Current Position: {account.position_side.value}",
        f"Position Size: {float(account.position_size):.6f}",
        f"Entry Price: {entry_price}",
        f"Leverage: {account.position_leverage}x",
        f"Unrealized P&L: ${_money(account.unrealized_pnl)}",
        f"Realized P&L: ${_money(account.realized_pnl)}",
        f"Total Trades: {account.total_trades}",
        f"Winning Trades: {account.winning_trades}",
        f"Win Rate: {win_rate}%",
        "",
        "COMPETITION RULES:",
        f"- Max Leverage: {config.max_leverage}x",
        f"- Fee Rate: {_pct(config.fee_rate, 3)}%",
        f"- Slippage: {_pct(config.slippage_rate, 3)}%",
        f"- Liquidation Threshold: {_pct(config.liquidation_threshold, 1)}%",
        "",
        "RESPOND WITH VALID JSON ONLY:",
        "{",
        '  "action": "LONG|SHORT|CLOSE|HOLD",',
        f'  "leverage": 1-{config.max_leverage},',
        '  "size_pct": 0.0-1.0,',
        '  "reason": "Brief explanation of your decision"',
        "}",
        "",
        "RULES:",
        "- LONG: Buy/long position",
        "- SHORT: Sell/short position",
        "- CLOSE: Close current position",
        "- HOLD: Do nothing",
        f"- leverage: Integer between 1 and {config.max_leverage}",
        "- size_pct: Decimal 0.0 to 1.0 (percentage of balance to use)",
        "- Only valid JSON response accepted",
        "- Consider technical indicators, risk management, and market trends",
        "- Manage risk carefully - preserve capital",
        "- If uncertain, use HOLD",
        "",
        "Make your trading decision now:",
    ]
    return "\n".join(sections)


def _indicator_lines(window: Sequence[Candle], timeframe: str) -> list:
    lines = []

    sma = calculate_sma(window, 20)
    if sma and not math.isnan(sma[-1]):
        lines.append(f"SMA(20): {sma[-1]:.2f}")

    if len(window) >= 12:
        ema = calculate_ema(window, 12)
        lines.append(f"EMA(12): {ema[-1]:.2f}")

    rsi = calculate_rsi(window, 14)
    if rsi and not math.isnan(rsi[-1]):
        lines.append(f"RSI(14): {rsi[-1]:.1f}")

    if len(window) >= 20:
        volatility = calculate_volatility(window, 20, periods_per_year(timeframe))
        lines.append(f"Volatility (annualized): {volatility * 100:.1f}%")

    return lines


def _extract_json_object(text: str) -> Optional[dict]:
    """First JSON object in ``text``, looking inside a fenced block first."""
    fenced = _FENCED_BLOCK.search(text)
    candidates = [fenced.group(1), text] if fenced else [text]

    decoder = json.JSONDecoder()
    for candidate in candidates:
        start = candidate.find("{")
        while start != -1:
            try:
                obj, _ = decoder.raw_decode(candidate, start)
            except json.JSONDecodeError:
                start = candidate.find("{", start + 1)
                continue
            if isinstance(obj, dict):
                return obj
            start = candidate.find("{", start + 1)
    return None


def parse_decision(text: Optional[str], max_leverage: int) -> TradeDecision:
    """
    Parse a backend answer into a sanitized decision.

    Args:
        text: Raw response text
        max_leverage: Upper bound for the leverage clamp

    Returns:
        TradeDecision (HOLD with a parse diagnostic on any failure)
    """
    if not text or not isinstance(text, str):
        return TradeDecision.hold(PARSE_ERROR_REASON)

    payload = _extract_json_object(text)
    if payload is None:
        logger.warning("provider.parse_failed", response=text[:200])
        return TradeDecision.hold(PARSE_ERROR_REASON)

    return TradeDecision.sanitize(payload, max_leverage)


class DecisionProvider(ABC):
    """
    Abstract base class for decision backends.

    Subclasses implement ``_complete`` (prompt in, response text out) and may
    raise freely there; ``decide`` owns the timeout and the HOLD fallback.
    """

    name = "base"

    def __init__(
        self,
        model_name: str = "",
        timeout: float = 30.0,
        prompt_candles: int = DEFAULT_PROMPT_CANDLES,
        strategy_mode: Optional[str] = None,
    ):
        self.model_name = model_name
        self.timeout = timeout
        self.prompt_candles = prompt_candles
        self.strategy_mode = strategy_mode

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model_name={self.model_name!r})"

    def build_prompt(
        self, window: Sequence[Candle], account: AccountState, config: SimulationConfig
    ) -> str:
        return build_prompt(window, account, config, self.prompt_candles, self.strategy_mode)

    async def decide(
        self,
        window: Sequence[Candle],
        account: AccountState,
        config: SimulationConfig,
    ) -> TradeDecision:
        """
        Produce a decision for the latest candle of ``window``.

        Args:
            window: Up to the last N candles, current candle last
            account: Read-only ledger view
            config: Competition parameters

        Returns:
            Sanitized TradeDecision; HOLD on any failure
        """
        log = logger.bind(provider=self.name, model=self.model_name)

        if not window:
            return TradeDecision.hold(EMPTY_WINDOW_REASON)

        try:
            prompt = self.build_prompt(window, account, config)
            text = await self._complete_within_timeout(prompt)
        except ProviderTimeoutError as e:
            log.warning("provider.timeout", timeout=self.timeout, error=str(e))
            return TradeDecision.hold(TIMEOUT_REASON)
        except ProviderError as e:
            log.warning("provider.error", error=str(e))
            return TradeDecision.hold(f"Provider error - defaulting to HOLD: {e}")
        except Exception as e:
            log.error("provider.unexpected_error", error=str(e), exc_info=True)
            return TradeDecision.hold(f"Provider error - defaulting to HOLD: {e}")

        decision = parse_decision(text, config.max_leverage)
        log.debug(
            "provider.decision",
            action=decision.action.value,
            leverage=decision.leverage,
            size_pct=str(decision.size_pct),
        )
        return decision

    async def _complete_within_timeout(self, prompt: str) -> str:
        """Run ``_complete`` under ``self.timeout``; expiry raises ProviderTimeoutError."""
        try:
            return await asyncio.wait_for(self._complete(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{self.name} did not answer within {self.timeout}s", provider=self.name
            ) from e

    @abstractmethod
    async def _complete(self, prompt: str) -> str:
        """Send ``prompt`` to the backend and return its raw text answer."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass
