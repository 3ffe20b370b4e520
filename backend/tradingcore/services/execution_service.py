"""
Execution Service

Turns admitted trade proposals into orders on the configured venue
(simulated or ByBit), persists every status change, and monitors live
orders until they reach a terminal state.

Tracking:
- Every created order is tracked as PENDING with an attempt counter
- Simulated orders are dropped from tracking on the next monitor pass
  (they fill synchronously)
- Live orders are re-fetched; terminal statuses leave tracking, stale ones
  are retried until max_order_retries and then cancelled and reported failed

The pending map and order history are only touched under self._lock.
Venue calls happen outside it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from tradingcore.cache import SimpleCache, trading_cache
from tradingcore.config import settings
from tradingcore.constants import (
    CALCULATE_POSITION_SIZE,
    CLOSE_ALL_POSITIONS,
    CLOSE_LOCK_PREFIX,
    CONFIG_UPDATE,
    EMERGENCY_STOP,
    EXECUTION_COMMANDS_TOPIC,
    MARKET_CACHE_PREFIX,
    ORDER_HISTORY_SIZE,
    ORDER_UPDATE,
    ORDER_UPDATES_TOPIC,
    PAUSE_TRADING,
    RISK_SIZE_REQUEST_TOPIC,
    START_TRADING,
    STOP_TRADING,
    TRADING_SIGNAL,
    TRADING_SIGNALS_TOPIC,
)
from tradingcore.database import async_session_maker
from tradingcore.exceptions import APIError, ExecutionError, TradingError, ValidationError
from tradingcore.exchange_clients.base import ExchangeClient
from tradingcore.message_bus import Message, MessageBus
from tradingcore.models import Order, Trade
from tradingcore.schemas import (
    AccountSnapshot,
    OrderRecord,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    PositionSizeProposal,
    Signal,
    SignalAction,
    TrackingStatus,
)
from tradingcore.services.periodic import PeriodicTask
from tradingcore.services.shutdown_manager import ShutdownManager

logger = logging.getLogger(__name__)

SERVICE_NAME = "execution"


class ExecutionConfig(BaseModel):
    slippage_tolerance: float = Field(default=0.1, ge=0, le=5)  # % price move allowed while sizing
    max_order_retries: int = Field(default=3, ge=1, le=10)
    order_timeout_seconds: float = Field(default=30.0, ge=5, le=120)
    partial_fill_threshold: float = Field(default=0.1, ge=0, le=1)  # remaining fraction treated as done
    simulation_mode: bool = Field(default_factory=lambda: settings.simulation_mode)

    def apply_patch(self, patch: Dict[str, Any]) -> "ExecutionConfig":
        allowed = set(type(self).model_fields) - {"simulation_mode"}
        unknown = set(patch) - allowed
        if unknown:
            raise ValidationError(f"Unknown execution settings: {', '.join(sorted(unknown))}")
        try:
            return ExecutionConfig.model_validate({**self.model_dump(), **patch})
        except PydanticValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError("; ".join(messages))


@dataclass
class TrackedOrder:
    order: OrderRecord
    status: TrackingStatus = TrackingStatus.PENDING
    attempts: int = 0
    last_attempt: datetime = field(default_factory=datetime.utcnow)
    strategy_id: Optional[str] = None


def calculate_realized_pnl(positions: List[Position], fill: OrderRecord) -> float:
    """Closing PnL of a fill against the position it reduces, net of the fill's fee."""
    pnl = -fill.fee
    if fill.average_price is None:
        return pnl
    for position in positions:
        if position.symbol != fill.symbol:
            continue
        closes_long = position.side == PositionSide.LONG and fill.side == OrderSide.SELL
        closes_short = position.side == PositionSide.SHORT and fill.side == OrderSide.BUY
        if not (closes_long or closes_short):
            continue
        closed = min(position.size, fill.executed_qty)
        direction = 1 if closes_long else -1
        pnl += (fill.average_price - position.entry_price) * closed * direction
    return pnl


class ExecutionService:
    def __init__(
        self,
        bus: MessageBus,
        client: ExchangeClient,
        cache: SimpleCache = trading_cache,
        session_factory=async_session_maker,
        config: Optional[ExecutionConfig] = None,
        interval_seconds: Optional[float] = None,
        request_timeout: Optional[float] = None,
        shutdown_manager: Optional[ShutdownManager] = None,
    ):
        self.bus = bus
        self.client = client
        self.cache = cache
        self.session_factory = session_factory
        self.config = config or ExecutionConfig(simulation_mode=client.is_simulated())
        self.request_timeout = request_timeout or settings.service_timeout_seconds
        self.shutdown_manager = shutdown_manager or ShutdownManager()
        self._pending: Dict[str, TrackedOrder] = {}
        self._history: Dict[str, OrderRecord] = {}
        self._lock = asyncio.Lock()
        self._monitor = PeriodicTask(
            "Order monitoring",
            interval_seconds or settings.order_monitor_interval_seconds,
            self.monitor_orders,
        )
        self._started_at: Optional[datetime] = None
        self.accepting_signals = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        await self.load_order_history()
        self.bus.subscribe(EXECUTION_COMMANDS_TOPIC, self.handle_command)
        self.bus.subscribe(TRADING_SIGNALS_TOPIC, self.handle_command)
        self._started_at = datetime.utcnow()
        self.shutdown_manager.cancel_shutdown()
        self.accepting_signals = True
        self._monitor.start()
        mode = "SIM" if self.client.is_simulated() else "LIVE"
        logger.info(f"⚡ Execution service started ({mode} mode)")

    async def stop(self):
        self.accepting_signals = False
        self.bus.unsubscribe(EXECUTION_COMMANDS_TOPIC, self.handle_command)
        self.bus.unsubscribe(TRADING_SIGNALS_TOPIC, self.handle_command)
        status = await self.shutdown_manager.prepare_shutdown(timeout=self.config.order_timeout_seconds)
        if not status["ready"]:
            logger.warning(f"Stopping with {status['in_flight_count']} orders still in-flight")
        await self.cancel_all_pending()
        await self._monitor.stop()
        logger.info("⚡ Execution service stopped")

    async def emergency_stop(self) -> Dict[str, Any]:
        """
        Cancel pending orders, close all positions, halt monitoring.

        New submissions are refused from here until START_TRADING; only the
        closing orders go through. Submissions already at the venue are waited
        for so they are cancelled or closed too. Every step runs even if an
        earlier one fails; failures are reported in the result instead of raised.
        """
        logger.critical("🚨 EMERGENCY STOP - cancelling orders and closing all positions")
        self.accepting_signals = False
        drain = await self.shutdown_manager.prepare_shutdown(timeout=self.config.order_timeout_seconds)
        if not drain["ready"]:
            logger.warning(f"Emergency stop: {drain['in_flight_count']} submissions still in-flight")
        results: Dict[str, Any] = {}

        try:
            cancelled = await self.cancel_all_pending()
            results["cancel_orders"] = {"success": True, "cancelled": cancelled}
        except Exception as e:
            logger.error(f"Emergency stop: cancelling orders failed: {e}", exc_info=True)
            results["cancel_orders"] = {"success": False, "error": str(e)}

        try:
            closed = await self.close_all_positions()
            results["close_positions"] = {"success": closed}
        except Exception as e:
            logger.error(f"Emergency stop: closing positions failed: {e}", exc_info=True)
            results["close_positions"] = {"success": False, "error": str(e)}

        try:
            await self._monitor.stop()
            results["halt_monitoring"] = {"success": True}
        except Exception as e:
            logger.error(f"Emergency stop: halting monitor failed: {e}", exc_info=True)
            results["halt_monitoring"] = {"success": False, "error": str(e)}

        async with self._lock:
            self._pending.clear()

        logger.critical(f"🚨 Emergency stop finished: {results}")
        return results

    @property
    def is_monitoring(self) -> bool:
        return self._monitor.is_running

    def health(self) -> Dict[str, Any]:
        return {
            "service": SERVICE_NAME,
            "status": "HEALTHY" if self._monitor.last_error is None else "DEGRADED",
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "scheduler": self._monitor.health(),
            "shutdown": self.shutdown_manager.get_status(),
            "metrics": self.metrics(),
        }

    def metrics(self) -> Dict[str, Any]:
        orders = list(self._history.values())
        filled = sum(1 for o in orders if o.status == OrderStatus.FILLED)
        return {
            "simulation_mode": self.client.is_simulated(),
            "accepting_signals": self.accepting_signals,
            "is_monitoring": self.is_monitoring,
            "pending_orders": len(self._pending),
            "total_orders": len(orders),
            "filled_orders": filled,
            "success_rate": filled / len(orders) * 100 if orders else 0.0,
            "in_flight": self.shutdown_manager.in_flight_count,
        }

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_command(self, message: Message):
        if message.type == TRADING_SIGNAL:
            signal = message.payload
            if isinstance(signal, dict):
                signal = Signal.model_validate(signal)
            await self.handle_trading_signal(signal)
        elif message.type == CLOSE_ALL_POSITIONS:
            await self.close_all_positions()
        elif message.type == START_TRADING:
            self.shutdown_manager.cancel_shutdown()
            self.accepting_signals = True
            self._monitor.start()
        elif message.type in (STOP_TRADING, PAUSE_TRADING):
            # Tracked orders keep being monitored
            self.accepting_signals = False
        elif message.type == CONFIG_UPDATE:
            patch = (message.payload or {}).get("execution")
            if patch:
                try:
                    self.update_config(patch)
                except ValidationError as e:
                    logger.warning(f"Rejected execution config update: {e.message}")
        elif message.type == EMERGENCY_STOP:
            await self.emergency_stop()
        else:
            logger.debug(f"Execution ignoring {message.type}")

    async def handle_trading_signal(self, signal: Signal) -> Optional[OrderRecord]:
        """Size a signal through risk and place a market order. Returns the order, if any."""
        if not self.accepting_signals:
            logger.info(f"Ignoring {signal.action.value} signal for {signal.symbol}: trading stopped")
            return None

        if signal.action == SignalAction.CLOSE:
            await self.close_position(signal.symbol)
            return None
        if signal.action not in (SignalAction.BUY, SignalAction.SELL):
            return None

        observation = await self.cache.get(f"{MARKET_CACHE_PREFIX}{signal.symbol}")
        if observation is None:
            logger.warning(f"⚠️ No market price for {signal.symbol}, skipping signal")
            return None
        current_price = observation.price

        try:
            reply = await self.bus.request(
                RISK_SIZE_REQUEST_TOPIC,
                CALCULATE_POSITION_SIZE,
                {"signal": signal, "current_price": current_price},
                timeout=self.request_timeout,
                source=SERVICE_NAME,
            )
            proposal = PositionSizeProposal.model_validate(reply)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ No sizing available for {signal.symbol} this cycle (risk timed out)")
            return None
        except APIError as e:
            logger.warning(f"⚠️ Sizing rejected for {signal.symbol}: {e.message}")
            return None
        except PydanticValidationError as e:
            logger.error(f"Malformed sizing reply for {signal.symbol}: {e}")
            return None

        if proposal.size <= 0:
            logger.info(f"Sized {signal.symbol} to zero, nothing to trade")
            return None

        latest = await self.cache.get(f"{MARKET_CACHE_PREFIX}{signal.symbol}")
        if latest is not None:
            moved = abs(latest.price - current_price) / current_price * 100
            if moved > self.config.slippage_tolerance:
                logger.warning(
                    f"⚠️ {signal.symbol} moved {moved:.3f}% while sizing "
                    f"(tolerance {self.config.slippage_tolerance}%), skipping"
                )
                return None

        if not self.accepting_signals:
            logger.info(f"Dropping sized {signal.symbol} signal: trading stopped while sizing")
            return None

        request = OrderRequest(
            symbol=signal.symbol,
            side=OrderSide(signal.action.value),
            type=OrderType.MARKET,
            quantity=proposal.size,
            leverage=proposal.leverage,
            strategy_id=signal.strategy,
        )
        try:
            return await self.create_order(request)
        except TradingError as e:
            logger.error(f"❌ Order for {signal.symbol} signal failed: {e.message}")
            return None

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, request: OrderRequest, allow_during_shutdown: bool = False) -> OrderRecord:
        """
        Place an order on the venue, persist and track it.

        allow_during_shutdown lets position closes through after a stop or
        emergency stop started draining.

        Raises:
            ValidationError: the venue cannot price the order
            ExecutionError: the venue failed or rejected the order, or
                submissions are closed
        """
        positions_before: List[Position] = []
        async with self.shutdown_manager.order_in_flight(allow_during_shutdown=allow_during_shutdown):
            try:
                if self.client.is_simulated():
                    positions_before = await self.client.get_positions()
                order = await self.client.place_order(request)
            except ValidationError:
                raise
            except Exception as e:
                logger.error(f"❌ Order creation failed for {request.symbol}: {e}")
                raise ExecutionError(f"Order creation failed: {e}")

            # Tracked before leaving the in-flight section so a drain sees it
            async with self._lock:
                self._pending[order.id] = TrackedOrder(order=order, strategy_id=request.strategy_id)
                self._remember(order)

        realized_pnl = None
        if order.status == OrderStatus.FILLED and self.client.is_simulated():
            realized_pnl = calculate_realized_pnl(positions_before, order)
        await self._persist_order(order, request.time_in_force, request.strategy_id, realized_pnl)
        await self._publish_order_update(order)

        logger.info(
            f"✅ Order {order.id}: {order.side.value} {order.quantity} {order.symbol} "
            f"{order.type.value} -> {order.status.value}"
        )
        return order

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an order. Returns True if it ends up CANCELED."""
        order = await self.find_order(order_id)
        if order is None:
            logger.warning(f"Cannot cancel unknown order {order_id}")
            return False

        try:
            result = await self.client.cancel_order(order_id, order.symbol)
        except Exception as e:
            logger.error(f"❌ Cancel failed for {order_id}: {e}")
            return False

        async with self._lock:
            tracked = self._pending.pop(order_id, None)
            if tracked is not None:
                tracked.status = TrackingStatus.CANCELLED
            self._remember(result)

        if result.status != order.status:
            await self._persist_order(result, strategy_id=tracked.strategy_id if tracked else None)
            await self._publish_order_update(result)
        return result.status == OrderStatus.CANCELED

    async def cancel_all_pending(self) -> int:
        """Cancel every tracked order and empty the pending map. Returns the number cancelled."""
        async with self._lock:
            order_ids = list(self._pending)
        cancelled = 0
        for order_id in order_ids:
            if await self.cancel_order(order_id):
                cancelled += 1
        async with self._lock:
            for order_id in order_ids:
                self._pending.pop(order_id, None)
        if order_ids:
            logger.info(f"Cancelled {cancelled}/{len(order_ids)} pending orders")
        return cancelled

    async def get_orders(
        self,
        status: Optional[OrderStatus] = None,
        symbol: Optional[str] = None,
        limit: int = 50,
    ) -> List[OrderRecord]:
        """Persisted orders, newest first."""
        query = select(Order).order_by(Order.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(Order.status == OrderStatus(status).value)
        if symbol:
            query = query.where(Order.symbol == symbol)
        async with self.session_factory() as db:
            result = await db.execute(query)
            return [OrderRecord.model_validate(row) for row in result.scalars().all()]

    def get_pending_orders(self) -> List[TrackedOrder]:
        return list(self._pending.values())

    def get_order_history(self) -> List[OrderRecord]:
        return list(self._history.values())

    async def load_order_history(self):
        """Restore the most recent orders into memory (and the simulated ledger)."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order).order_by(Order.created_at.desc()).limit(ORDER_HISTORY_SIZE)
            )
            records = [OrderRecord.model_validate(row) for row in result.scalars().all()]

        records.reverse()
        async with self._lock:
            for record in records:
                self._remember(record)
        if self.client.is_simulated():
            self.client.restore_fills(records)
        logger.info(f"Loaded {len(records)} orders from history")

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def monitor_orders(self):
        """One pass over tracked orders. A failure on one order leaves the others unaffected."""
        async with self._lock:
            tracked_orders = list(self._pending.values())

        for tracked in tracked_orders:
            if tracked.order.mode == "SIM":
                async with self._lock:
                    self._pending.pop(tracked.order.id, None)
                tracked.status = TrackingStatus.COMPLETED
                continue
            try:
                await self._check_order(tracked)
            except Exception as e:
                logger.error(f"Error monitoring order {tracked.order.id}: {e}", exc_info=True)

    async def _check_order(self, tracked: TrackedOrder):
        order_id = tracked.order.id
        latest = await self.client.get_order(order_id, tracked.order.symbol)
        if latest is None:
            logger.warning(f"Venue does not know order {order_id}, leaving it pending")
            return

        if latest.status != tracked.order.status or latest.executed_qty != tracked.order.executed_qty:
            tracked.order = latest
            async with self._lock:
                self._remember(latest)
            await self._persist_order(latest, strategy_id=tracked.strategy_id)
            await self._publish_order_update(latest)

        if latest.is_terminal:
            tracked.status = (
                TrackingStatus.COMPLETED if latest.status == OrderStatus.FILLED else TrackingStatus.FAILED
            )
            async with self._lock:
                self._pending.pop(order_id, None)
            logger.info(f"Order {order_id} reached {latest.status.value}")
            return

        if latest.status == OrderStatus.PARTIALLY_FILLED and latest.quantity > 0:
            remaining = (latest.quantity - latest.executed_qty) / latest.quantity
            if remaining <= self.config.partial_fill_threshold:
                logger.info(f"Order {order_id} {remaining:.1%} unfilled, cancelling remainder")
                await self.cancel_order(order_id)
                tracked.status = TrackingStatus.COMPLETED
                return

        elapsed = (datetime.utcnow() - tracked.last_attempt).total_seconds()
        if elapsed <= self.config.order_timeout_seconds:
            return

        if tracked.attempts < self.config.max_order_retries:
            tracked.attempts += 1
            tracked.last_attempt = datetime.utcnow()
            tracked.status = TrackingStatus.EXECUTING
            logger.info(
                f"Order {order_id} still {latest.status.value} after {elapsed:.0f}s, "
                f"retry {tracked.attempts}/{self.config.max_order_retries}"
            )
            return

        logger.warning(f"⏱️ Order {order_id} timed out after {tracked.attempts} retries, cancelling")
        await self.cancel_order(order_id)
        tracked.status = TrackingStatus.FAILED
        async with self._lock:
            self._pending.pop(order_id, None)
        await self.bus.publish(
            ORDER_UPDATES_TOPIC,
            ORDER_UPDATE,
            {"order_id": order_id, "status": TrackingStatus.FAILED.value, "reason": "timeout"},
            source=SERVICE_NAME,
        )

    # ------------------------------------------------------------------
    # Positions & account
    # ------------------------------------------------------------------

    async def get_positions(self) -> List[Position]:
        return await self.client.get_positions()

    async def get_account_state(self) -> AccountSnapshot:
        """Balance and positions for the risk engine. Takes no execution lock."""
        balance = await self.client.get_balance()
        positions = await self.client.get_positions()
        return AccountSnapshot(
            total_balance=balance["total"],
            available_balance=balance["available"],
            positions=positions,
        )

    async def close_position(self, symbol: str) -> bool:
        """Flatten symbol with opposing reduce-only market orders. Returns success."""
        try:
            async with self.cache.lock(f"{CLOSE_LOCK_PREFIX}{symbol}"):
                positions = [p for p in await self.client.get_positions() if p.symbol == symbol]
                if not positions:
                    logger.info(f"No open position for {symbol}")
                    return True
                for position in positions:
                    side = OrderSide.SELL if position.side == PositionSide.LONG else OrderSide.BUY
                    await self.create_order(OrderRequest(
                        symbol=symbol,
                        side=side,
                        type=OrderType.MARKET,
                        quantity=position.size,
                        price=position.mark_price if position.mark_price > 0 else None,
                        leverage=position.leverage,
                        reduce_only=True,
                        strategy_id="close",
                    ), allow_during_shutdown=True)
                    logger.info(f"Closed {position.side.value} {position.size} {symbol}")
            return True
        except asyncio.TimeoutError:
            logger.error(f"Close of {symbol} already in progress, lock not acquired")
            return False
        except TradingError as e:
            logger.error(f"❌ Failed to close {symbol}: {e.message}")
            return False

    async def close_all_positions(self) -> bool:
        """Close every open position concurrently. True only if every close succeeded."""
        positions = await self.client.get_positions()
        symbols = sorted({p.symbol for p in positions})
        if not symbols:
            return True
        results = await asyncio.gather(*(self.close_position(s) for s in symbols))
        logger.info(f"Closed {sum(results)}/{len(symbols)} positions")
        return all(results)

    async def reset_simulated_balance(self, amount: Optional[float] = None) -> float:
        if not self.client.is_simulated():
            raise ValidationError("Balance reset is only available in simulation mode")
        if amount is not None and amount <= 0:
            raise ValidationError("amount must be positive")
        async with self._lock:
            self._pending.clear()
        return await self.client.reset_balance(amount)

    def update_config(self, patch: Dict[str, Any]) -> ExecutionConfig:
        self.config = self.config.apply_patch(patch)
        logger.info(f"⚙️ Execution config updated: {patch}")
        return self.config

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _remember(self, order: OrderRecord):
        self._history.pop(order.id, None)
        self._history[order.id] = order
        while len(self._history) > ORDER_HISTORY_SIZE:
            del self._history[next(iter(self._history))]

    async def find_order(self, order_id: str) -> Optional[OrderRecord]:
        if order_id in self._history:
            return self._history[order_id]
        async with self.session_factory() as db:
            row = await db.get(Order, order_id)
            return OrderRecord.model_validate(row) if row else None

    async def _persist_order(
        self,
        order: OrderRecord,
        time_in_force: Optional[str] = None,
        strategy_id: Optional[str] = None,
        realized_pnl: Optional[float] = None,
    ):
        try:
            async with self.session_factory() as db:
                row = await db.get(Order, order.id)
                if row is None:
                    row = Order(id=order.id, created_at=order.created_at)
                    db.add(row)
                row.symbol = order.symbol
                row.side = order.side.value
                row.type = order.type.value
                row.quantity = order.quantity
                row.price = order.price
                row.stop_price = order.stop_price
                if time_in_force:
                    row.time_in_force = time_in_force
                row.status = order.status.value
                row.executed_qty = order.executed_qty
                row.average_price = order.average_price
                row.leverage = order.leverage
                row.fee = order.fee
                row.external_order_id = order.external_order_id
                row.mode = order.mode
                row.updated_at = order.updated_at

                # Cancelled or expired remainders still leave their executed part as a trade
                if order.is_terminal and order.executed_qty and order.average_price is not None:
                    db.add(Trade(
                        timestamp=order.updated_at,
                        symbol=order.symbol,
                        side=order.side.value,
                        quantity=order.executed_qty,
                        price=order.average_price,
                        fee=order.fee,
                        realized_pnl=realized_pnl,
                        strategy_id=strategy_id,
                        mode=order.mode,
                        order_id=order.id,
                    ))
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to persist order {order.id}: {e}", exc_info=True)

    async def _publish_order_update(self, order: OrderRecord):
        await self.bus.publish(
            ORDER_UPDATES_TOPIC, ORDER_UPDATE, order.model_dump(mode="json"), source=SERVICE_NAME
        )
