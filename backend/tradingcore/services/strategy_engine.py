"""
Strategy Engine Service

Owns the rolling observation windows and signal source configs. Every cycle
it evaluates each enabled source per symbol, aggregates the results into one
decision per symbol, and publishes actionable decisions on the signals topic.

State is only touched under self._lock, so the scheduled cycle and message
handlers never interleave.
"""

import asyncio
import logging
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from tradingcore.cache import SimpleCache, trading_cache
from tradingcore.config import settings
from tradingcore.constants import (
    CONFIG_UPDATE,
    EMERGENCY_STOP,
    MARKET_CACHE_PREFIX,
    MARKET_DATA_TOPIC,
    MARKET_DATA_UPDATE,
    MIN_WINDOW_FOR_ANALYSIS,
    OBSERVATION_WINDOW_SIZE,
    PAUSE_TRADING,
    PUBLISH_CONFIDENCE_THRESHOLD,
    START_TRADING,
    STOP_TRADING,
    STRATEGIES_CONFIG_KEY,
    STRATEGY_COMMANDS_TOPIC,
    TRADING_SIGNAL,
    TRADING_SIGNALS_TOPIC,
)
from tradingcore.database import async_session_maker
from tradingcore.exceptions import NotFoundError, ValidationError
from tradingcore.message_bus import Message, MessageBus
from tradingcore.schemas import AggregatedDecision, Observation, Signal, SignalAction, SourceConfig
from tradingcore.services.periodic import PeriodicTask
from tradingcore.services.settings_service import get_config_value, set_config_value
from tradingcore.services.signal_aggregator import aggregate_signals
from tradingcore.strategies import SignalSourceRegistry

logger = logging.getLogger(__name__)

SERVICE_NAME = "strategy-engine"


class StrategyEngineService:
    def __init__(
        self,
        bus: MessageBus,
        cache: SimpleCache = trading_cache,
        session_factory=async_session_maker,
        symbols: Optional[List[str]] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.bus = bus
        self.cache = cache
        self.session_factory = session_factory
        self.symbols = list(symbols or settings.trading_symbols)
        self._configs: Dict[str, SourceConfig] = SignalSourceRegistry.default_configs(self.symbols)
        self._windows: Dict[str, Deque[Observation]] = {}
        self._current_signals: Dict[str, List[Signal]] = {}
        self._decisions: Dict[str, AggregatedDecision] = {}
        self._source_failures: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()
        self._scheduler = PeriodicTask(
            "Signal aggregation",
            interval_seconds or settings.signal_interval_seconds,
            self.run_cycle,
        )
        self._started_at: Optional[datetime] = None
        self.paused = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        await self.load_configs()
        self.bus.subscribe(STRATEGY_COMMANDS_TOPIC, self.handle_command)
        self.bus.subscribe(MARKET_DATA_TOPIC, self.handle_command)
        self._started_at = datetime.utcnow()
        self.start_analysis()
        logger.info(f"🧠 Strategy engine started for {len(self.symbols)} symbols")

    async def stop(self):
        await self._scheduler.stop()
        self.bus.unsubscribe(STRATEGY_COMMANDS_TOPIC, self.handle_command)
        self.bus.unsubscribe(MARKET_DATA_TOPIC, self.handle_command)
        logger.info("🧠 Strategy engine stopped")

    def start_analysis(self):
        self.paused = False
        self._scheduler.start()

    async def stop_analysis(self, paused: bool = False):
        self.paused = paused
        await self._scheduler.stop()

    async def emergency_stop(self):
        logger.critical("🚨 EMERGENCY STOP - halting signal generation")
        await self._scheduler.stop()
        self._current_signals.clear()
        self._decisions.clear()

    @property
    def is_analyzing(self) -> bool:
        return self._scheduler.is_running

    def health(self) -> Dict[str, Any]:
        return {
            "service": SERVICE_NAME,
            "status": "HEALTHY" if self._scheduler.last_error is None else "DEGRADED",
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "scheduler": self._scheduler.health(),
            "metrics": self.metrics(),
        }

    def metrics(self) -> Dict[str, Any]:
        decisions = list(self._decisions.values())
        return {
            "is_analyzing": self.is_analyzing,
            "paused": self.paused,
            "enabled_strategies": sum(1 for c in self._configs.values() if c.enabled),
            "total_strategies": len(self._configs),
            "active_signals": len(decisions),
            "avg_confidence": (
                sum(d.confidence for d in decisions) / len(decisions) if decisions else 0.0
            ),
            "source_failures": dict(self._source_failures),
        }

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_command(self, message: Message):
        if message.type == MARKET_DATA_UPDATE:
            observation = message.payload
            if isinstance(observation, dict):
                observation = Observation.model_validate(observation)
            await self.ingest(observation)
        elif message.type == START_TRADING:
            self.start_analysis()
        elif message.type == STOP_TRADING:
            await self.stop_analysis()
        elif message.type == PAUSE_TRADING:
            await self.stop_analysis(paused=True)
        elif message.type == CONFIG_UPDATE:
            for source_id, patch in (message.payload or {}).get("strategies", {}).items():
                try:
                    await self.update_source_config(source_id, patch)
                except (ValidationError, NotFoundError) as e:
                    logger.warning(f"Rejected config update for {source_id}: {e.message}")
        elif message.type == EMERGENCY_STOP:
            await self.emergency_stop()
        else:
            logger.debug(f"Strategy engine ignoring {message.type}")

    async def ingest(self, observation: Observation):
        """Append an observation to its symbol's rolling window (oldest evicted)"""
        async with self._lock:
            window = self._windows.get(observation.symbol)
            if window is None:
                window = deque(maxlen=OBSERVATION_WINDOW_SIZE)
                self._windows[observation.symbol] = window
            window.append(observation)

    # ------------------------------------------------------------------
    # Analysis cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Dict[str, AggregatedDecision]:
        """Evaluate all symbols once. Returns the decisions made this cycle."""
        decisions: Dict[str, AggregatedDecision] = {}
        async with self._lock:
            for symbol in self.symbols:
                window = await self._window_for(symbol)
                if not window:
                    continue

                signals = await self._collect_signals(symbol, window)
                decision = aggregate_signals(symbol, signals, self._configs)
                self._current_signals[symbol] = signals
                self._decisions[symbol] = decision
                decisions[symbol] = decision

                if decision.resolved is not None and decision.confidence > PUBLISH_CONFIDENCE_THRESHOLD:
                    await self.bus.publish(
                        TRADING_SIGNALS_TOPIC, TRADING_SIGNAL, decision.resolved, source=SERVICE_NAME
                    )
                    logger.info(
                        f"📣 {symbol} {decision.resolved.action.value} signal published "
                        f"(confidence {decision.confidence:.1f})"
                    )
                elif decision.resolved is not None:
                    logger.debug(f"{symbol} decision at {decision.confidence:.1f} kept internal")

        return decisions

    async def _window_for(self, symbol: str) -> List[Observation]:
        window = list(self._windows.get(symbol, ()))
        if len(window) < MIN_WINDOW_FOR_ANALYSIS:
            cached = await self.cache.get(f"{MARKET_CACHE_PREFIX}{symbol}")
            if cached is not None:
                return [cached]
        return window

    async def _collect_signals(self, symbol: str, window: List[Observation]) -> List[Signal]:
        signals: List[Signal] = []
        for source_id, config in self._configs.items():
            if not config.enabled or not config.applies_to(symbol):
                continue
            try:
                source = SignalSourceRegistry.get_source(source_id, config)
                produced = await source.analyze(symbol, window)
            except Exception as e:
                self._source_failures[source_id] += 1
                logger.error(f"Signal source {source_id} failed on {symbol}: {e}", exc_info=True)
                continue

            for signal in produced or []:
                if self._is_well_formed(signal, symbol):
                    signals.append(signal)
                else:
                    self._source_failures[source_id] += 1
                    logger.warning(f"Dropping malformed signal from {source_id} for {symbol}: {signal!r}")
        return signals

    @staticmethod
    def _is_well_formed(signal: Any, symbol: str) -> bool:
        return (
            isinstance(signal, Signal)
            and signal.symbol == symbol
            and signal.action in SignalAction
            and 0 <= signal.confidence <= 100
        )

    # ------------------------------------------------------------------
    # Source configuration
    # ------------------------------------------------------------------

    async def load_configs(self):
        """Overlay persisted configs on the registry defaults"""
        async with self.session_factory() as db:
            stored = await get_config_value(db, STRATEGIES_CONFIG_KEY, default={})

        for source_id, raw in (stored or {}).items():
            if source_id not in self._configs:
                logger.warning(f"Ignoring stored config for unknown source {source_id}")
                continue
            try:
                self._configs[source_id] = SourceConfig.model_validate(raw)
            except Exception as e:
                logger.warning(f"Ignoring invalid stored config for {source_id}: {e}")

    async def save_configs(self):
        async with self.session_factory() as db:
            await set_config_value(
                db,
                STRATEGIES_CONFIG_KEY,
                {source_id: c.model_dump() for source_id, c in self._configs.items()},
                description="Signal source configuration",
            )
            await db.commit()

    def get_configs(self) -> Dict[str, SourceConfig]:
        return dict(self._configs)

    def get_config(self, source_id: str) -> SourceConfig:
        if source_id not in self._configs:
            raise NotFoundError(f"Unknown strategy: {source_id}")
        return self._configs[source_id]

    async def update_source_config(self, source_id: str, patch: Dict[str, Any]) -> SourceConfig:
        async with self._lock:
            updated = self.get_config(source_id).apply_patch(patch)
            try:
                SignalSourceRegistry.get_source(source_id, updated)
            except ValueError as e:
                raise ValidationError(str(e))
            self._configs[source_id] = updated
            await self.save_configs()
        logger.info(f"⚙️ Updated config for {source_id}: {patch}")
        return updated

    async def enable_source(self, source_id: str) -> SourceConfig:
        return await self.update_source_config(source_id, {"enabled": True})

    async def disable_source(self, source_id: str) -> SourceConfig:
        return await self.update_source_config(source_id, {"enabled": False})

    def get_current_signals(self, symbol: Optional[str] = None) -> Dict[str, List[Signal]]:
        if symbol is not None:
            return {symbol: list(self._current_signals.get(symbol, []))}
        return {s: list(v) for s, v in self._current_signals.items()}

    def get_decisions(self) -> Dict[str, AggregatedDecision]:
        return dict(self._decisions)
