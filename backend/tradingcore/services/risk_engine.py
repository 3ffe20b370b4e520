"""
Risk Engine Service

Holds the single authoritative risk snapshot. Every cycle it pulls balance
and positions from the account collaborator, recomputes drawdown, margin
usage, liquidation risk and the risk level, stores the snapshot and raises
alerts for limit breaches.

Also answers position-sizing requests from execution over the message bus
and serves admission checks.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import func, select

from tradingcore.cache import SimpleCache, trading_cache
from tradingcore.config import settings
from tradingcore.constants import (
    CONFIG_UPDATE,
    EMERGENCY_STOP,
    PAUSE_TRADING,
    POSITION_CACHE_PREFIX,
    POSITION_CACHE_TTL,
    RISK_COMMANDS_TOPIC,
    RISK_LIMIT_KEY_PREFIX,
    RISK_LIMITS_UPDATED,
    RISK_METRICS_CACHE_KEY,
    RISK_METRICS_CACHE_TTL,
    RISK_SIZE_REQUEST_TOPIC,
    RISK_UPDATE,
    RISK_UPDATES_TOPIC,
    START_TRADING,
    STOP_TRADING,
)
from tradingcore.database import async_session_maker
from tradingcore.exceptions import RiskError, ValidationError
from tradingcore.message_bus import Message, MessageBus
from tradingcore.models import Notification, RiskMetric, Trade
from tradingcore.schemas import (
    AccountSnapshot,
    Position,
    PositionSizeProposal,
    RiskAlert,
    RiskAssessment,
    RiskLevel,
    RiskLimits,
    RiskState,
    Signal,
)
from tradingcore.services.periodic import PeriodicTask
from tradingcore.services.risk_state import (
    assess_position,
    calculate_daily_loss_percent,
    calculate_liquidation_risk,
    calculate_margin_usage,
    calculate_max_drawdown,
    calculate_position_size,
    check_risk_limits,
    determine_risk_level,
    update_balance_history,
)
from tradingcore.services.settings_service import get_config_values, set_config_value

logger = logging.getLogger(__name__)

SERVICE_NAME = "risk-engine"

AccountProvider = Callable[[], Awaitable[AccountSnapshot]]


class RiskEngineService:
    def __init__(
        self,
        bus: MessageBus,
        account_provider: AccountProvider,
        cache: SimpleCache = trading_cache,
        session_factory=async_session_maker,
        interval_seconds: Optional[float] = None,
        default_leverage: Optional[int] = None,
        limits: Optional[RiskLimits] = None,
    ):
        self.bus = bus
        self.account_provider = account_provider
        self.cache = cache
        self.session_factory = session_factory
        self.default_leverage = default_leverage or settings.default_leverage
        self.limits = limits or RiskLimits.from_settings(settings)
        self._state: Optional[RiskState] = None
        self._balance_history: List[float] = []
        self._positions: Dict[str, Position] = {}
        self._last_alerts: List[RiskAlert] = []
        self._lock = asyncio.Lock()
        self._scheduler = PeriodicTask(
            "Risk monitoring",
            interval_seconds or settings.risk_interval_seconds,
            self.run_cycle,
        )
        self._started_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        await self.load_limits()
        self.bus.subscribe(RISK_COMMANDS_TOPIC, self.handle_command)
        self.bus.subscribe(RISK_SIZE_REQUEST_TOPIC, self.handle_size_request)
        self._started_at = datetime.utcnow()
        self._scheduler.start()
        logger.info(f"🛡️ Risk engine started (limits: {self.limits.model_dump()})")

    async def stop(self):
        await self._scheduler.stop()
        self.bus.unsubscribe(RISK_COMMANDS_TOPIC, self.handle_command)
        self.bus.unsubscribe(RISK_SIZE_REQUEST_TOPIC, self.handle_size_request)
        logger.info("🛡️ Risk engine stopped")

    async def emergency_stop(self):
        logger.critical("🚨 EMERGENCY STOP - risk monitoring halted, trading blocked")
        await self._scheduler.stop()
        if self._state is not None:
            self._state = self._state.model_copy(
                update={"is_trade_allowed": False, "risk_level": RiskLevel.CRITICAL}
            )
        await self.bus.publish(
            RISK_UPDATES_TOPIC,
            RISK_UPDATE,
            {"type": EMERGENCY_STOP, "timestamp": datetime.utcnow().isoformat()},
            source=SERVICE_NAME,
        )

    @property
    def is_monitoring(self) -> bool:
        return self._scheduler.is_running

    def health(self) -> Dict[str, Any]:
        return {
            "service": SERVICE_NAME,
            "status": "HEALTHY" if self._scheduler.last_error is None else "DEGRADED",
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "scheduler": self._scheduler.health(),
            "metrics": {
                "is_monitoring": self.is_monitoring,
                "risk_level": self._state.risk_level.value if self._state else None,
                "is_trade_allowed": self._state.is_trade_allowed if self._state else False,
                "open_positions": len(self._positions),
                "balance_samples": len(self._balance_history),
            },
        }

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_command(self, message: Message):
        if message.type == START_TRADING:
            self._scheduler.start()
        elif message.type in (STOP_TRADING, PAUSE_TRADING):
            await self._scheduler.stop()
        elif message.type == CONFIG_UPDATE:
            patch = (message.payload or {}).get("risk_limits")
            if patch:
                try:
                    await self.update_limits(patch)
                except ValidationError as e:
                    logger.warning(f"Rejected risk limit update: {e.message}")
        elif message.type == EMERGENCY_STOP:
            await self.emergency_stop()
        else:
            logger.debug(f"Risk engine ignoring {message.type}")

    async def handle_size_request(self, message: Message):
        """Reply to a sizing request with a proposal or {"error": ...}"""
        payload = message.payload or {}
        try:
            signal = payload.get("signal")
            if isinstance(signal, dict):
                signal = Signal.model_validate(signal)
            if not isinstance(signal, Signal):
                raise ValidationError("sizing request is missing a signal")
            current_price = float(payload.get("current_price", 0))
            async with self._lock:
                proposal = self.calculate_position_size(signal, current_price)
            reply = proposal.model_dump()
        except (RiskError, ValidationError) as e:
            logger.warning(f"⚠️ Sizing request rejected: {e.message}")
            reply = {"error": e.message}
        except (TypeError, ValueError) as e:
            logger.warning(f"⚠️ Malformed sizing request: {e}")
            reply = {"error": f"Malformed sizing request: {e}"}
        await self.bus.reply(message, reply, source=SERVICE_NAME)

    # ------------------------------------------------------------------
    # Risk snapshot
    # ------------------------------------------------------------------

    async def run_cycle(self) -> RiskState:
        """Recompute the risk snapshot. On failure the previous snapshot stays in place."""
        account = await self.account_provider()
        positions = list(account.positions)
        total_balance = account.total_balance
        total_unrealized = sum(p.unrealized_pnl for p in positions)

        async with self.session_factory() as db:
            daily_pnl = await self._daily_realized_pnl(db)

        # Only the state swap happens under the lock
        async with self._lock:
            self._balance_history = update_balance_history(
                self._balance_history, total_balance + total_unrealized
            )
            max_drawdown = calculate_max_drawdown(self._balance_history)
            margin_usage = calculate_margin_usage(positions, total_balance)
            daily_loss_percent = calculate_daily_loss_percent(daily_pnl, total_balance)
            risk_level = determine_risk_level(
                daily_loss_percent, margin_usage, self.limits.daily_loss_limit
            )

            state = RiskState(
                total_balance=total_balance,
                available_balance=account.available_balance,
                total_unrealized_pnl=total_unrealized,
                daily_pnl=daily_pnl,
                max_drawdown=max_drawdown,
                risk_level=risk_level,
                is_trade_allowed=risk_level != RiskLevel.CRITICAL,
                margin_usage=margin_usage,
                liquidation_risk=calculate_liquidation_risk(positions),
            )
            self._state = state
            self._positions = {f"{p.symbol}:{p.side.value}": p for p in positions}
            alerts = check_risk_limits(state, self.limits)
            self._last_alerts = alerts

        await self._cache_snapshot(state, positions)
        await self._store_snapshot(state, alerts)
        await self.bus.publish(
            RISK_UPDATES_TOPIC,
            RISK_UPDATE,
            {"type": "SNAPSHOT", "metrics": state.model_dump(mode="json")},
            source=SERVICE_NAME,
        )
        for alert in alerts:
            logger.warning(f"🚨 Risk alert {alert.type}: {alert.data}")
            await self.bus.publish(
                RISK_UPDATES_TOPIC, RISK_UPDATE, alert.model_dump(mode="json"), source=SERVICE_NAME
            )

        logger.debug(
            f"Risk snapshot: level={state.risk_level.value} balance={state.total_balance:.2f} "
            f"daily_pnl={state.daily_pnl:.2f} margin={state.margin_usage:.1f}%"
        )
        return state

    async def _daily_realized_pnl(self, db) -> float:
        start_of_day = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        query = select(func.coalesce(func.sum(Trade.realized_pnl), 0.0)).where(
            Trade.timestamp >= start_of_day
        )
        result = await db.execute(query)
        return float(result.scalar() or 0.0)

    async def _cache_snapshot(self, state: RiskState, positions: List[Position]):
        await self.cache.set(RISK_METRICS_CACHE_KEY, state, RISK_METRICS_CACHE_TTL)
        await self.cache.delete_prefix(POSITION_CACHE_PREFIX)
        for position in positions:
            await self.cache.set(f"{POSITION_CACHE_PREFIX}{position.symbol}", position, POSITION_CACHE_TTL)

    async def _store_snapshot(self, state: RiskState, alerts: List[RiskAlert]):
        try:
            async with self.session_factory() as db:
                db.add(RiskMetric(
                    timestamp=state.timestamp,
                    total_balance=state.total_balance,
                    available_balance=state.available_balance,
                    total_unrealized_pnl=state.total_unrealized_pnl,
                    daily_pnl=state.daily_pnl,
                    max_drawdown=state.max_drawdown,
                    risk_level=state.risk_level.value,
                    is_trade_allowed=state.is_trade_allowed,
                    margin_usage=state.margin_usage,
                    liquidation_risk=state.liquidation_risk,
                ))
                for alert in alerts:
                    db.add(Notification(
                        type="risk",
                        title=alert.type,
                        message=json.dumps(alert.data),
                        priority="HIGH",
                    ))
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to store risk snapshot: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Accessors (state is only replaced, never mutated in place)
    # ------------------------------------------------------------------

    def get_metrics(self) -> Optional[RiskState]:
        return self._state

    def get_positions(self) -> List[Position]:
        return list(self._positions.values())

    def get_last_alerts(self) -> List[RiskAlert]:
        return list(self._last_alerts)

    def get_limits(self) -> RiskLimits:
        return self.limits

    def validate_position(
        self,
        symbol: str,
        side: str,
        quantity: float,
        leverage: int,
        price: float,
    ) -> RiskAssessment:
        return assess_position(symbol, side, quantity, leverage, price, self._state, self.limits)

    def calculate_position_size(self, signal: Signal, current_price: float) -> PositionSizeProposal:
        return calculate_position_size(
            signal, current_price, self._state, self.limits, self.default_leverage
        )

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    async def load_limits(self):
        async with self.session_factory() as db:
            stored = await get_config_values(db, RISK_LIMIT_KEY_PREFIX)
        known = {k: v for k, v in stored.items() if k in RiskLimits.model_fields}
        if not known:
            return
        try:
            self.limits = self.limits.apply_patch(known)
            logger.info(f"Loaded persisted risk limits: {known}")
        except ValidationError as e:
            logger.warning(f"Ignoring invalid persisted risk limits: {e.message}")

    async def update_limits(self, patch: Dict[str, Any]) -> RiskLimits:
        """Validate, apply and persist a limits patch, then announce it"""
        async with self._lock:
            updated = self.limits.apply_patch(patch)
            applied = {key: getattr(updated, key) for key in patch}
            changed = {k: v for k, v in applied.items() if v != getattr(self.limits, k)}
            async with self.session_factory() as db:
                for key, value in applied.items():
                    await set_config_value(
                        db, f"{RISK_LIMIT_KEY_PREFIX}{key}", value, description=f"Risk limit: {key}"
                    )
                await db.commit()
            self.limits = updated

        logger.info(f"🛡️ Risk limits updated: {changed}")
        await self.bus.publish(
            RISK_UPDATES_TOPIC,
            RISK_LIMITS_UPDATED,
            {"limits": updated.model_dump(), "changed": changed},
            source=SERVICE_NAME,
        )
        return updated
