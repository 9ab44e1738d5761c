"""
Candle feed for arena runs.

Downloads OHLCV candles through CCXT and keeps them in an explicit,
TTL-bound cache object owned by the caller. Falls back to a generated
random-walk series when the exchange is unreachable so a run can still
proceed.
"""

import asyncio
import random
import time
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import ccxt.async_support as ccxt
import structlog

from arena.core.models import Candle

logger = structlog.get_logger(__name__)

CacheKey = Tuple[str, str, int]

TIMEFRAME_MS = {
    "1m": 60_000,
    "5m": 5 * 60_000,
    "15m": 15 * 60_000,
    "30m": 30 * 60_000,
    "1h": 60 * 60_000,
    "4h": 4 * 60 * 60_000,
    "1d": 24 * 60 * 60_000,
    "1w": 7 * 24 * 60 * 60_000,
}

DEFAULT_TIMEFRAME = "1h"
DEFAULT_SYMBOL = "BTC/USDT"

SYMBOLS = {
    "BTC": "BTC/USDT",
    "ETH": "ETH/USDT",
    "SOL": "SOL/USDT",
    "ADA": "ADA/USDT",
    "DOT": "DOT/USDT",
    "LINK": "LINK/USDT",
    "UNI": "UNI/USDT",
    "AVAX": "AVAX/USDT",
    "MATIC": "MATIC/USDT",
    "ATOM": "ATOM/USDT",
}


class CandleCache:
    """
    Time-based cache of candle sequences keyed by (market, timeframe, limit).

    One asyncio.Lock per key makes concurrent refreshes of the same key load
    once; other callers wait and read the fresh value.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, Tuple[Candle, ...]]] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}

    def get(self, key: CacheKey) -> Optional[List[Candle]]:
        """Cached candles for ``key`` or None when missing/expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, candles = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return list(candles)

    def set(self, key: CacheKey, candles: List[Candle]) -> None:
        self._entries[key] = (self._clock(), tuple(candles))

    def invalidate(
        self, market: Optional[str] = None, timeframe: Optional[str] = None
    ) -> int:
        """Drop entries matching the filters (all entries when none given).

        Returns:
            Number of entries removed
        """
        doomed = [
            key
            for key in self._entries
            if (market is None or key[0] == market)
            and (timeframe is None or key[1] == timeframe)
        ]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_load(
        self, key: CacheKey, loader: Callable[[], Awaitable[List[Candle]]]
    ) -> List[Candle]:
        """Return the cached value or load it once under the key's lock."""
        cached = self.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self.get(key)
            if cached is not None:
                return cached
            candles = await loader()
            self.set(key, candles)
            return list(candles)


def convert_symbol(market: str) -> str:
    """Map an arena market (``BTC``) to an exchange symbol (``BTC/USDT``)."""
    market = (market or "").upper()
    if "/" in market:
        return market
    return SYMBOLS.get(market, DEFAULT_SYMBOL)


def convert_timeframe(timeframe: str) -> str:
    return timeframe if timeframe in TIMEFRAME_MS else DEFAULT_TIMEFRAME


def generate_mock_candles(
    limit: int,
    timeframe: str = DEFAULT_TIMEFRAME,
    seed: Optional[int] = None,
    start_price: Optional[float] = None,
    now_ms: Optional[int] = None,
) -> List[Candle]:
    """Random-walk candles ending now, oldest first."""
    rng = random.Random(seed)
    interval = TIMEFRAME_MS[convert_timeframe(timeframe)]
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)

    price = start_price if start_price is not None else 50000 + rng.random() * 20000
    candles = []

    for i in range(limit - 1, -1, -1):
        volatility = 0.02
        trend = (rng.random() - 0.5) * 0.001
        change = (rng.random() - 0.5) * volatility + trend

        open_ = price
        close = open_ * (1 + change)

        spread = abs(change) + rng.random() * 0.01
        high = max(open_, close) * (1 + spread / 2)
        low = min(open_, close) * (1 - spread / 2)
        volume = 100 + rng.random() * 500

        candles.append(
            Candle(
                timestamp=now_ms - i * interval,
                open=Decimal(f"{open_:.2f}"),
                high=Decimal(f"{high:.2f}"),
                low=Decimal(f"{low:.2f}"),
                close=Decimal(f"{close:.2f}"),
                volume=Decimal(f"{volume:.2f}"),
            )
        )
        price = close

    logger.info("candle_feed.mock_generated", count=len(candles), timeframe=timeframe)
    return candles


class CandleFeed:
    """
    Ordered, fixed-length candle sequences for a market and timeframe.

    Features:
    - Downloads via CCXT (Binance spot by default)
    - Caches through an injected CandleCache
    - Falls back to mock candles when the exchange fails
    - Offline mode serves mock candles only
    """

    def __init__(
        self,
        cache: Optional[CandleCache] = None,
        exchange_id: str = "binance",
        use_mock_fallback: bool = True,
        mock_seed: Optional[int] = None,
        offline: bool = False,
    ):
        self.cache = cache if cache is not None else CandleCache()
        self.offline = offline
        self.exchange_id = exchange_id
        self.use_mock_fallback = use_mock_fallback
        self.mock_seed = mock_seed
        self.exchange = None

    async def initialize(self):
        """Initialize exchange connection."""
        if self.exchange is None:
            self.exchange = getattr(ccxt, self.exchange_id)(
                {
                    "enableRateLimit": True,
                    "options": {"defaultType": "spot"},
                }
            )
            logger.info("candle_feed.exchange_initialized", exchange=self.exchange_id)

    async def close(self):
        """Close exchange connection."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None

    async def fetch_candles(
        self, market: str, timeframe: str, limit: int = 1000
    ) -> List[Candle]:
        """
        Candles for ``market``/``timeframe``, oldest first.

        Args:
            market: Arena market, e.g. 'BTC'
            timeframe: Candle timeframe, e.g. '1h'
            limit: Number of candles

        Returns:
            List of Candle objects (possibly fewer than ``limit``)
        """
        key = (market.upper(), timeframe, limit)
        if self.offline:
            return await self.cache.get_or_load(key, lambda: self._generate(timeframe, limit))

        try:
            return await self.cache.get_or_load(
                key, lambda: self._download(market, timeframe, limit)
            )
        except (ccxt.BaseError, OSError, asyncio.TimeoutError) as e:
            if not self.use_mock_fallback:
                raise
            logger.warning(
                "candle_feed.fetch_failed",
                market=market,
                timeframe=timeframe,
                error=str(e),
                fallback="mock",
            )
            return generate_mock_candles(limit, timeframe, seed=self.mock_seed)

    async def _generate(self, timeframe: str, limit: int) -> List[Candle]:
        return generate_mock_candles(limit, timeframe, seed=self.mock_seed)

    async def _download(self, market: str, timeframe: str, limit: int) -> List[Candle]:
        await self.initialize()

        symbol = convert_symbol(market)
        ohlcv = await self.exchange.fetch_ohlcv(
            symbol, timeframe=convert_timeframe(timeframe), limit=limit
        )

        by_timestamp = {}
        for row in ohlcv or []:
            try:
                candle = Candle.from_ohlcv(row)
            except (ValueError, TypeError, IndexError, InvalidOperation) as e:
                logger.warning("candle_feed.bad_row", symbol=symbol, row=row, error=str(e))
                continue
            by_timestamp[candle.timestamp] = candle

        candles = [by_timestamp[ts] for ts in sorted(by_timestamp)]

        logger.info(
            "candle_feed.downloaded",
            market=market,
            symbol=symbol,
            timeframe=timeframe,
            count=len(candles),
        )
        return candles

    async def get_current_price(self, market: str) -> Optional[Decimal]:
        """Last traded price, or None when the exchange is unavailable."""
        try:
            await self.initialize()
            ticker = await self.exchange.fetch_ticker(convert_symbol(market))
            last = ticker.get("last")
            if last is None:
                logger.warning("candle_feed.price_missing", market=market)
                return None
            return Decimal(str(last))
        except (
            ccxt.BaseError, OSError, asyncio.TimeoutError,
            AttributeError, TypeError, InvalidOperation,
        ) as e:
            logger.warning("candle_feed.price_failed", market=market, error=str(e))
            return None
