"""
Decision providers for arena models.

``create_provider`` is the registry: it maps a ModelSpec to one concrete
backend class and falls back to RandomProvider only when the backend is not
configured (unknown provider, missing API key, missing custom URL).
"""

from typing import Dict, Optional, Type, Union

import structlog

from arena.core.config import ProviderAPIConfig, provider_config
from arena.core.models import ModelSpec
from arena.providers.base import DecisionProvider, build_prompt, parse_decision
from arena.providers.http import (
    AnthropicProvider,
    CustomProvider,
    DeepSeekProvider,
    GoogleProvider,
    HTTPProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    XAIProvider,
)
from arena.providers.random_provider import RandomProvider

logger = structlog.get_logger(__name__)

# Backends authenticated by an API key from ProviderAPIConfig
KEYED_PROVIDERS: Dict[str, Type[HTTPProvider]] = {
    "openai": OpenAICompatibleProvider,
    "xai": XAIProvider,
    "deepseek": DeepSeekProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
}

PROVIDER_NAMES = tuple(KEYED_PROVIDERS) + ("ollama", "custom", "random")


def create_provider(
    spec: ModelSpec,
    config: Optional[ProviderAPIConfig] = None,
    seed: Optional[Union[int, str]] = None,
    prompt_candles: int = 20,
) -> DecisionProvider:
    """
    Build the decision provider for a model.

    Args:
        spec: Participating model
        config: Provider credentials and request settings
        seed: Seed for the random fallback
        prompt_candles: Candles rendered into prompts

    Returns:
        DecisionProvider instance
    """
    config = config or provider_config
    name = (spec.provider or "").strip().lower()
    common = {
        "timeout": config.request_timeout,
        "retry_attempts": config.retry_attempts,
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
        "prompt_candles": prompt_candles,
        "strategy_mode": spec.strategy_mode,
    }

    if name in KEYED_PROVIDERS:
        api_key = config.get_api_key(name)
        if api_key:
            return KEYED_PROVIDERS[name](spec.model_name, api_key=api_key, **common)
        fallback_reason = "missing_api_key"
    elif name == "ollama":
        return OllamaProvider(
            spec.model_name, base_url=spec.base_url or config.ollama_base_url, **common
        )
    elif name == "custom":
        if spec.base_url:
            return CustomProvider(spec.model_name, base_url=spec.base_url, **common)
        fallback_reason = "missing_base_url"
    elif name == "random":
        return RandomProvider(spec.model_name or "random", seed=seed)
    else:
        fallback_reason = "unknown_provider"

    logger.warning(
        "provider.random_fallback",
        model_id=spec.id,
        provider=spec.provider,
        reason=fallback_reason,
    )
    return RandomProvider(spec.model_name or "random", seed=seed)


__all__ = [
    "DecisionProvider",
    "HTTPProvider",
    "OpenAICompatibleProvider",
    "XAIProvider",
    "DeepSeekProvider",
    "AnthropicProvider",
    "GoogleProvider",
    "OllamaProvider",
    "CustomProvider",
    "RandomProvider",
    "PROVIDER_NAMES",
    "build_prompt",
    "create_provider",
    "parse_decision",
]
