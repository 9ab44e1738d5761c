"""Random decisions for models without a configured backend."""

import json
import random
from decimal import Decimal
from typing import Optional, Sequence, Union

from arena.core.models import AccountState, Candle, SimulationConfig, TradeAction, TradeDecision
from arena.providers.base import DecisionProvider

RANDOM_REASON = "Simulated decision (no API key configured)"

ACTIONS = (TradeAction.LONG, TradeAction.SHORT, TradeAction.CLOSE, TradeAction.HOLD)
WEIGHTS = (0.2, 0.2, 0.1, 0.5)


class RandomProvider(DecisionProvider):
    """
    Weighted random decisions, HOLD-biased.

    leverage is uniform in [1, min(3, max_leverage)], size_pct uniform in
    [0.1, 0.3]. Pass ``seed`` for reproducible runs.
    """

    name = "random"

    def __init__(self, model_name: str = "random", seed: Optional[Union[int, str]] = None, **kwargs):
        super().__init__(model_name=model_name, **kwargs)
        self._rng = random.Random(seed)

    async def decide(
        self,
        window: Sequence[Candle],
        account: AccountState,
        config: SimulationConfig,
    ) -> TradeDecision:
        action = self._rng.choices(ACTIONS, weights=WEIGHTS, k=1)[0]
        leverage = self._rng.randint(1, min(3, config.max_leverage))
        size_pct = Decimal(str(round(self._rng.uniform(0.1, 0.3), 4)))

        return TradeDecision.sanitize(
            {
                "action": action.value,
                "leverage": leverage,
                "size_pct": size_pct,
                "reason": RANDOM_REASON,
            },
            config.max_leverage,
        )

    async def _complete(self, prompt: str) -> str:
        # decide() never sends a prompt; a direct call answers HOLD
        return json.dumps({"action": "HOLD", "leverage": 1, "size_pct": 0, "reason": RANDOM_REASON})
