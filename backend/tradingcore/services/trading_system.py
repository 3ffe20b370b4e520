"""
Trading System

Wires the message bus, cache, exchange clients and the four services
(market feed, strategy engine, risk engine, execution) and owns their
lifecycle. Components start in dependency order and stop in reverse.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from tradingcore.cache import SimpleCache, trading_cache
from tradingcore.config import settings
from tradingcore.constants import (
    COMMAND_TOPICS,
    CONFIG_UPDATE,
    EMERGENCY_STOP,
    PAUSE_TRADING,
    START_TRADING,
    STOP_TRADING,
)
from tradingcore.database import async_session_maker, init_db
from tradingcore.exceptions import ValidationError
from tradingcore.exchange_clients.base import ExchangeClient
from tradingcore.exchange_clients.bybit_adapter import BybitFuturesClient
from tradingcore.exchange_clients.bybit_client import ByBitClient
from tradingcore.exchange_clients.simulated_client import SimulatedExchangeClient
from tradingcore.message_bus import MessageBus
from tradingcore.services.execution_service import ExecutionService
from tradingcore.services.market_feed import MarketFeedService
from tradingcore.services.risk_engine import RiskEngineService
from tradingcore.services.strategy_engine import StrategyEngineService

logger = logging.getLogger(__name__)

BROADCAST_COMMANDS = (START_TRADING, STOP_TRADING, PAUSE_TRADING, CONFIG_UPDATE, EMERGENCY_STOP)


def build_exchange_clients(cache: SimpleCache) -> Tuple[ExchangeClient, ExchangeClient]:
    """
    Returns (execution client, market data client) for the configured bot_mode.

    SIM reads public ByBit market data and fills orders on the paper venue.
    LIVE trades on ByBit with the configured credentials.
    """
    if settings.simulation_mode:
        market_client = BybitFuturesClient(ByBitClient(testnet=settings.bybit_testnet))
        return SimulatedExchangeClient(cache, market_data=market_client), market_client

    if not settings.bybit_api_key or not settings.bybit_api_secret:
        raise ValidationError("BYBIT_API_KEY and BYBIT_API_SECRET are required in LIVE mode")
    live_client = BybitFuturesClient(ByBitClient(
        api_key=settings.bybit_api_key,
        api_secret=settings.bybit_api_secret,
        testnet=settings.bybit_testnet,
    ))
    return live_client, live_client


class TradingSystem:
    def __init__(
        self,
        bus: Optional[MessageBus] = None,
        cache: Optional[SimpleCache] = None,
        session_factory=async_session_maker,
        execution_client: Optional[ExchangeClient] = None,
        market_client: Optional[ExchangeClient] = None,
        symbols: Optional[List[str]] = None,
        init_database: bool = True,
    ):
        self.bus = bus or MessageBus()
        self.cache = cache or trading_cache
        self.symbols = list(symbols or settings.trading_symbols)
        self.init_database = init_database

        if execution_client is None:
            execution_client, market_client = build_exchange_clients(self.cache)
        self.execution_client = execution_client
        self.market_client = market_client or execution_client

        self.execution = ExecutionService(self.bus, execution_client, self.cache, session_factory)
        self.risk = RiskEngineService(
            self.bus, self.execution.get_account_state, self.cache, session_factory
        )
        self.strategy = StrategyEngineService(self.bus, self.cache, session_factory, symbols=self.symbols)
        self.market_feed = MarketFeedService(self.bus, self.market_client, self.cache, symbols=self.symbols)

        self.running = False
        self._started_at: Optional[datetime] = None

    @property
    def services(self) -> Dict[str, Any]:
        """Components in start order"""
        return {
            "execution": self.execution,
            "risk": self.risk,
            "strategy": self.strategy,
            "market_feed": self.market_feed,
        }

    async def start(self):
        if self.running:
            logger.warning("Trading system already running")
            return
        if self.init_database:
            await init_db()
        for name, service in self.services.items():
            await service.start()
            logger.info(f"🚀 {name} started")
        self.running = True
        self._started_at = datetime.utcnow()
        mode = "SIM" if self.execution_client.is_simulated() else "LIVE"
        logger.info(f"🚀 Trading system running ({mode}, {len(self.symbols)} symbols)")

    async def stop(self):
        if not self.running:
            return
        for name, service in reversed(list(self.services.items())):
            try:
                await service.stop()
                logger.info(f"🛑 {name} stopped")
            except Exception as e:
                logger.error(f"Failed to stop {name}: {e}", exc_info=True)
        await self.bus.join()
        await self.bus.close()
        self.running = False
        logger.info("🛑 Trading system stopped")

    async def broadcast_command(self, command: str, payload: Optional[Dict[str, Any]] = None):
        """Fan a command out to every component's command channel"""
        if command not in BROADCAST_COMMANDS:
            raise ValidationError(f"Unknown command {command}. Supported: {', '.join(BROADCAST_COMMANDS)}")
        for topic in COMMAND_TOPICS:
            await self.bus.publish(topic, command, payload or {}, source="system")
        logger.info(f"📢 Broadcast {command}")

    async def emergency_stop(self) -> Dict[str, Any]:
        """Stop signal generation, block trading, then flatten. Every component is attempted."""
        logger.critical("🚨 SYSTEM EMERGENCY STOP")
        results: Dict[str, Any] = {}

        try:
            await self.strategy.emergency_stop()
            results["strategy"] = {"success": True}
        except Exception as e:
            logger.error(f"Strategy emergency stop failed: {e}", exc_info=True)
            results["strategy"] = {"success": False, "error": str(e)}

        try:
            await self.risk.emergency_stop()
            results["risk"] = {"success": True}
        except Exception as e:
            logger.error(f"Risk emergency stop failed: {e}", exc_info=True)
            results["risk"] = {"success": False, "error": str(e)}

        try:
            results["execution"] = await self.execution.emergency_stop()
        except Exception as e:
            logger.error(f"Execution emergency stop failed: {e}", exc_info=True)
            results["execution"] = {"success": False, "error": str(e)}

        return results

    def health(self) -> Dict[str, Any]:
        services = {name: service.health() for name, service in self.services.items()}
        healthy = self.running and all(h.get("status") == "HEALTHY" for h in services.values())
        return {
            "status": "HEALTHY" if healthy else "DEGRADED",
            "running": self.running,
            "mode": "SIM" if self.execution_client.is_simulated() else "LIVE",
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "services": services,
            "timestamp": datetime.utcnow().isoformat(),
        }
