"""
Market Feed Service

Polls the market-data client for every configured symbol, caches the latest
observation under market:{symbol} and publishes it on the market data topic.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from tradingcore.cache import SimpleCache, trading_cache
from tradingcore.config import settings
from tradingcore.constants import MARKET_CACHE_PREFIX, MARKET_CACHE_TTL, MARKET_DATA_TOPIC, MARKET_DATA_UPDATE
from tradingcore.exchange_clients.base import ExchangeClient
from tradingcore.message_bus import MessageBus
from tradingcore.schemas import Observation
from tradingcore.services.periodic import PeriodicTask

logger = logging.getLogger(__name__)

SERVICE_NAME = "market-feed"


class MarketFeedService:
    def __init__(
        self,
        bus: MessageBus,
        client: ExchangeClient,
        cache: SimpleCache = trading_cache,
        symbols: Optional[List[str]] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.bus = bus
        self.client = client
        self.cache = cache
        self.symbols = list(symbols or settings.trading_symbols)
        self._failures: Dict[str, int] = {}
        self._last_update: Dict[str, datetime] = {}
        self._poller = PeriodicTask(
            "Market feed",
            interval_seconds or settings.market_feed_interval_seconds,
            self.poll,
        )

    async def start(self):
        self._poller.start()

    async def stop(self):
        await self._poller.stop()

    async def poll(self) -> List[Observation]:
        """Fetch one observation per symbol. Returns those that succeeded."""
        observations = []
        for symbol in self.symbols:
            try:
                observation = await self.client.get_ticker(symbol)
            except Exception as e:
                self._failures[symbol] = self._failures.get(symbol, 0) + 1
                logger.warning(f"Market data fetch failed for {symbol}: {e}")
                continue

            await self.cache.set(f"{MARKET_CACHE_PREFIX}{symbol}", observation, MARKET_CACHE_TTL)
            await self.bus.publish(MARKET_DATA_TOPIC, MARKET_DATA_UPDATE, observation, source=SERVICE_NAME)
            self._last_update[symbol] = observation.timestamp
            observations.append(observation)

        expired = await self.cache.cleanup_expired()
        if expired:
            logger.debug(f"Swept {expired} expired cache entries")
        return observations

    def health(self) -> Dict[str, Any]:
        return {
            "service": SERVICE_NAME,
            "status": "HEALTHY" if self._poller.last_error is None else "DEGRADED",
            "scheduler": self._poller.health(),
            "symbols": len(self.symbols),
            "fetch_failures": dict(self._failures),
            "last_update": {s: t.isoformat() for s, t in self._last_update.items()},
        }
