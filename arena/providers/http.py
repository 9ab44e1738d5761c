"""
HTTP decision backends.

One class per wire format:
- OpenAICompatibleProvider: OpenAI, xAI and DeepSeek chat completions
- AnthropicProvider: Messages API
- GoogleProvider: Gemini generateContent
- OllamaProvider: local /api/generate
- CustomProvider: any endpoint taking {model, prompt, ...}

Transport errors are retried with exponential backoff; HTTP error statuses
and malformed bodies raise ProviderResponseError.
"""

import asyncio
import logging  # Needed for tenacity before_sleep_log level constants
from typing import Any, Dict, Optional

import aiohttp
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from arena.core.exceptions import ProviderResponseError
from arena.providers.base import DEFAULT_PROMPT_CANDLES, DecisionProvider

retry_logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
XAI_URL = "https://api.x.ai/v1/chat/completions"
DEEPSEEK_URL = "https://api.deepseek.com/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GOOGLE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


class HTTPProvider(DecisionProvider):
    """Shared JSON-over-HTTP plumbing for hosted and local backends."""

    def __init__(
        self,
        model_name: str,
        timeout: float = 30.0,
        retry_attempts: int = 2,
        temperature: float = 0.1,
        max_tokens: int = 200,
        prompt_candles: int = DEFAULT_PROMPT_CANDLES,
        strategy_mode: Optional[str] = None,
    ):
        super().__init__(
            model_name=model_name,
            timeout=timeout,
            prompt_candles=prompt_candles,
            strategy_mode=strategy_mode,
        )
        self.retry_attempts = retry_attempts
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """POST ``payload`` and return the decoded JSON body, retrying transport errors."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=4),
            before_sleep=before_sleep_log(retry_logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._request(url, payload, headers, params)

    async def _request(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]],
        params: Optional[Dict[str, str]],
    ) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", **(headers or {})},
                params=params,
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise ProviderResponseError(
                        f"{self.name} API error: {response.status} {body[:200]}",
                        provider=self.name,
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise ProviderResponseError(
                        f"{self.name} returned invalid JSON", provider=self.name
                    ) from e

    def _dig(self, data: Any, *path) -> str:
        """Follow ``path`` into a decoded body; the leaf must be text."""
        try:
            for key in path:
                data = data[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderResponseError(
                f"{self.name} response missing {'/'.join(map(str, path))}",
                provider=self.name,
            ) from e
        if not isinstance(data, str):
            raise ProviderResponseError(f"{self.name} response is not text", provider=self.name)
        return data


class OpenAICompatibleProvider(HTTPProvider):
    """Chat-completions backends with bearer auth (OpenAI, xAI, DeepSeek)."""

    name = "openai"
    default_url = OPENAI_URL

    def __init__(self, model_name: str, api_key: str, base_url: Optional[str] = None, **kwargs):
        super().__init__(model_name, **kwargs)
        self.api_key = api_key
        self.url = base_url or self.default_url

    async def _complete(self, prompt: str) -> str:
        data = await self._post_json(
            self.url,
            {
                "model": self.model_name,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return self._dig(data, "choices", 0, "message", "content")


class XAIProvider(OpenAICompatibleProvider):
    name = "xai"
    default_url = XAI_URL


class DeepSeekProvider(OpenAICompatibleProvider):
    name = "deepseek"
    default_url = DEEPSEEK_URL


class AnthropicProvider(HTTPProvider):
    """Anthropic Messages API."""

    name = "anthropic"

    def __init__(self, model_name: str, api_key: str, **kwargs):
        super().__init__(model_name, **kwargs)
        self.api_key = api_key

    async def _complete(self, prompt: str) -> str:
        data = await self._post_json(
            ANTHROPIC_URL,
            {
                "model": self.model_name,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
                "messages": [{"role": "user", "content": prompt}],
            },
            headers={"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION},
        )
        return self._dig(data, "content", 0, "text")


class GoogleProvider(HTTPProvider):
    """Gemini generateContent endpoint."""

    name = "google"

    def __init__(self, model_name: str, api_key: str, **kwargs):
        super().__init__(model_name, **kwargs)
        self.api_key = api_key

    async def _complete(self, prompt: str) -> str:
        data = await self._post_json(
            GOOGLE_URL.format(model=self.model_name),
            {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": self.temperature,
                    "maxOutputTokens": self.max_tokens,
                },
            },
            params={"key": self.api_key},
        )
        return self._dig(data, "candidates", 0, "content", "parts", 0, "text")


class OllamaProvider(HTTPProvider):
    """Local Ollama server."""

    name = "ollama"

    def __init__(self, model_name: str, base_url: str = "http://localhost:11434", **kwargs):
        super().__init__(model_name, **kwargs)
        self.base_url = base_url.rstrip("/")

    async def _complete(self, prompt: str) -> str:
        data = await self._post_json(
            f"{self.base_url}/api/generate",
            {
                "model": self.model_name,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": self.temperature},
            },
        )
        return self._dig(data, "response")


class CustomProvider(HTTPProvider):
    """User-hosted endpoint answering with ``response``, ``content`` or ``text``."""

    name = "custom"

    def __init__(self, model_name: str, base_url: str, api_key: str = "", **kwargs):
        super().__init__(model_name, **kwargs)
        self.base_url = base_url
        self.api_key = api_key

    async def _complete(self, prompt: str) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        data = await self._post_json(
            self.base_url,
            {
                "model": self.model_name,
                "prompt": prompt,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
            headers=headers,
        )
        if isinstance(data, dict):
            for key in ("response", "content", "text"):
                if isinstance(data.get(key), str):
                    return data[key]
        raise ProviderResponseError("custom response has no text field", provider=self.name)
