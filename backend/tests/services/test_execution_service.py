"""
Tests for backend/tradingcore/services/execution_service.py

Covers:
- create_order / cancel_order persistence and order updates
- handle_trading_signal: sizing over the bus, timeouts, slippage tolerance
- monitor_orders: SIM completion, live status sync, retries and timeout cancellation
- close_position / close_all_positions
- emergency_stop, lifecycle and config updates
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from tradingcore.constants import (
    EXECUTION_COMMANDS_TOPIC,
    ORDER_UPDATES_TOPIC,
    RISK_SIZE_REQUEST_TOPIC,
    START_TRADING,
    STOP_TRADING,
    TRADING_SIGNAL,
    TRADING_SIGNALS_TOPIC,
)
from tradingcore.exceptions import APIError, ExecutionError, ValidationError
from tradingcore.exchange_clients.simulated_client import SimulatedExchangeClient
from tradingcore.message_bus import Message
from tradingcore.models import Order, Trade
from tradingcore.schemas import (
    Observation,
    OrderRecord,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    Signal,
    SignalAction,
    TrackingStatus,
)
from tradingcore.services.execution_service import (
    ExecutionConfig,
    ExecutionService,
    calculate_realized_pnl,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def sim_client(cache):
    await cache.set("market:BTCUSDT", Observation(symbol="BTCUSDT", price=100.0), 30)
    await cache.set("market:ETHUSDT", Observation(symbol="ETHUSDT", price=10.0), 30)
    return SimulatedExchangeClient(cache, starting_balance=10000.0)


@pytest.fixture
def execution(bus, cache, session_factory, sim_client):
    return ExecutionService(bus, sim_client, cache, session_factory, interval_seconds=60, request_timeout=0.2)


@pytest.fixture
def live_execution(bus, cache, session_factory, mock_exchange_client):
    return ExecutionService(
        bus, mock_exchange_client, cache, session_factory, interval_seconds=60, request_timeout=0.2
    )


@pytest.fixture
def order_updates(bus):
    updates = []

    async def collect(message):
        updates.append(message.payload)

    bus.subscribe(ORDER_UPDATES_TOPIC, collect)
    return updates


@pytest.fixture
def risk_responder(bus, cache):
    """Install a fake risk engine answering sizing requests."""
    def _install(reply, before_reply=None):
        async def responder(message):
            if before_reply is not None:
                await before_reply()
            await bus.reply(message, reply, source="risk-engine")

        bus.subscribe(RISK_SIZE_REQUEST_TOPIC, responder)
    return _install


def _live_order(order_id="ord-1", status=OrderStatus.NEW, executed_qty=0.0, symbol="BTCUSDT", quantity=1.0):
    return OrderRecord(
        id=order_id,
        symbol=symbol,
        side=OrderSide.BUY,
        type=OrderType.LIMIT,
        quantity=quantity,
        price=100.0,
        status=status,
        executed_qty=executed_qty,
        average_price=100.0 if executed_qty else None,
        external_order_id=order_id,
        mode="LIVE",
    )


def _signal(action=SignalAction.BUY, symbol="BTCUSDT", confidence=80.0):
    return Signal(symbol=symbol, action=action, confidence=confidence, strategy="aggregated")


PROPOSAL = {"size": 0.5, "leverage": 3, "stop_loss": 98.0, "margin": 16.67}


# =============================================================================
# Orders
# =============================================================================


class TestCreateOrder:
    """Tests for ExecutionService.create_order()."""

    @pytest.mark.asyncio
    async def test_sim_order_fills_persists_and_publishes(
        self, bus, session_factory, execution, sim_client, order_updates
    ):
        """Happy path: a SIM market BUY fills with slippage and fee, and is recorded."""
        order = await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        await bus.join()

        assert order.status == OrderStatus.FILLED
        assert order.average_price == pytest.approx(100.05)
        assert order.fee == pytest.approx(0.04002)
        assert sim_client.balance == pytest.approx(10000.0 - 100.05 - 0.04002)
        assert [t.order.id for t in execution.get_pending_orders()] == [order.id]
        assert order_updates[0]["id"] == order.id
        assert order_updates[0]["status"] == "FILLED"

        async with session_factory() as db:
            row = await db.get(Order, order.id)
            trades = (await db.execute(select(Trade).where(Trade.order_id == order.id))).scalars().all()
        assert row.status == "FILLED"
        assert row.mode == "SIM"
        assert len(trades) == 1
        assert trades[0].realized_pnl == pytest.approx(-0.04002)

    @pytest.mark.asyncio
    async def test_sim_order_without_price_is_rejected(self, execution):
        """Failure: no cached price and no limit price raises ValidationError."""
        with pytest.raises(ValidationError, match="No market price"):
            await execution.create_order(OrderRequest(symbol="XRPUSDT", side=OrderSide.BUY, quantity=1.0))

    @pytest.mark.asyncio
    async def test_venue_failure_becomes_execution_error(self, live_execution, mock_exchange_client):
        """Failure: an exchange error surfaces as ExecutionError and nothing is tracked."""
        mock_exchange_client.place_order.side_effect = APIError("rejected")
        with pytest.raises(ExecutionError):
            await live_execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        assert live_execution.get_pending_orders() == []

    @pytest.mark.asyncio
    async def test_live_order_is_tracked_as_pending(self, live_execution, mock_exchange_client):
        mock_exchange_client.place_order.return_value = _live_order()
        order = await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )
        tracked = live_execution.get_pending_orders()
        assert order.status == OrderStatus.NEW
        assert tracked[0].status == TrackingStatus.PENDING
        assert tracked[0].attempts == 0

    @pytest.mark.asyncio
    async def test_get_orders_filters_newest_first(self, execution):
        """Happy path: persisted orders filter by symbol and status."""
        first = await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        second = await execution.create_order(OrderRequest(symbol="ETHUSDT", side=OrderSide.BUY, quantity=2.0))

        everything = await execution.get_orders(status=OrderStatus.FILLED)
        assert [o.id for o in everything] == [second.id, first.id]
        eth = await execution.get_orders(symbol="ETHUSDT")
        assert [o.id for o in eth] == [second.id]
        assert await execution.get_orders(status=OrderStatus.CANCELED) == []


class TestCancelOrder:
    """Tests for ExecutionService.cancel_order()."""

    @pytest.mark.asyncio
    async def test_cancel_live_order(self, session_factory, live_execution, mock_exchange_client):
        """Happy path: an open live order is cancelled, untracked and persisted."""
        order = _live_order()
        mock_exchange_client.place_order.return_value = order
        mock_exchange_client.cancel_order.return_value = order.model_copy(update={"status": OrderStatus.CANCELED})
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )

        assert await live_execution.cancel_order("ord-1") is True
        assert live_execution.get_pending_orders() == []
        async with session_factory() as db:
            assert (await db.get(Order, "ord-1")).status == "CANCELED"

    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, execution):
        """Edge case: unknown ids return False."""
        assert await execution.cancel_order("missing") is False

    @pytest.mark.asyncio
    async def test_cancel_filled_sim_order_returns_false(self, execution):
        """Edge case: a filled SIM order stays FILLED."""
        order = await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        assert await execution.cancel_order(order.id) is False
        assert (await execution.find_order(order.id)).status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_venue_cancel_failure_returns_false(self, live_execution, mock_exchange_client):
        mock_exchange_client.place_order.return_value = _live_order()
        mock_exchange_client.cancel_order.side_effect = APIError("exchange down")
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )
        assert await live_execution.cancel_order("ord-1") is False
        assert len(live_execution.get_pending_orders()) == 1


# =============================================================================
# Signals
# =============================================================================


class TestHandleTradingSignal:
    """Tests for ExecutionService.handle_trading_signal()."""

    @pytest.mark.asyncio
    async def test_signal_sized_by_risk_and_placed(self, session_factory, execution, risk_responder):
        """Happy path: the risk proposal drives quantity and leverage."""
        risk_responder(PROPOSAL)
        execution.accepting_signals = True

        order = await execution.handle_trading_signal(_signal())

        assert order.side == OrderSide.BUY
        assert order.quantity == 0.5
        assert order.leverage == 3
        async with session_factory() as db:
            trade = (await db.execute(select(Trade).where(Trade.order_id == order.id))).scalars().one()
        assert trade.strategy_id == "aggregated"

    @pytest.mark.asyncio
    async def test_signal_ignored_when_not_accepting(self, execution, risk_responder):
        """Edge case: before start (or after STOP) signals are ignored."""
        risk_responder(PROPOSAL)
        assert await execution.handle_trading_signal(_signal()) is None
        assert execution.get_order_history() == []

    @pytest.mark.asyncio
    async def test_sizing_timeout_produces_no_trade(self, execution):
        """Failure: risk never answers, so no order is placed this cycle."""
        execution.accepting_signals = True
        assert await execution.handle_trading_signal(_signal()) is None
        assert execution.get_order_history() == []

    @pytest.mark.asyncio
    async def test_sizing_error_produces_no_trade(self, execution, risk_responder):
        """Failure: a risk error reply means no trade."""
        risk_responder({"error": "Risk metrics not available"})
        execution.accepting_signals = True
        assert await execution.handle_trading_signal(_signal()) is None
        assert execution.get_order_history() == []

    @pytest.mark.asyncio
    async def test_zero_size_produces_no_trade(self, execution, risk_responder):
        risk_responder({**PROPOSAL, "size": 0.0})
        execution.accepting_signals = True
        assert await execution.handle_trading_signal(_signal()) is None

    @pytest.mark.asyncio
    async def test_missing_price_skips_signal(self, execution, risk_responder):
        """Edge case: no cached price for the symbol means no sizing request."""
        risk_responder(PROPOSAL)
        execution.accepting_signals = True
        assert await execution.handle_trading_signal(_signal(symbol="XRPUSDT")) is None

    @pytest.mark.asyncio
    async def test_price_moved_beyond_tolerance_skips(self, cache, execution, risk_responder):
        """Edge case: a 1% move while sizing exceeds the 0.1% tolerance."""
        async def move_price():
            await cache.set("market:BTCUSDT", Observation(symbol="BTCUSDT", price=101.0), 30)

        risk_responder(PROPOSAL, before_reply=move_price)
        execution.accepting_signals = True
        assert await execution.handle_trading_signal(_signal()) is None
        assert execution.get_order_history() == []

    @pytest.mark.asyncio
    async def test_hold_is_ignored(self, execution, risk_responder):
        risk_responder(PROPOSAL)
        execution.accepting_signals = True
        assert await execution.handle_trading_signal(_signal(SignalAction.HOLD)) is None

    @pytest.mark.asyncio
    async def test_close_signal_flattens_position(self, execution, sim_client):
        execution.accepting_signals = True
        await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))

        await execution.handle_trading_signal(_signal(SignalAction.CLOSE))
        assert await sim_client.get_positions() == []

    @pytest.mark.asyncio
    async def test_signal_message_from_bus(self, bus, execution, risk_responder):
        """Happy path: TRADING_SIGNAL messages with dict payloads are handled."""
        risk_responder(PROPOSAL)
        execution.accepting_signals = True
        await execution.handle_command(Message(
            topic=TRADING_SIGNALS_TOPIC, type=TRADING_SIGNAL, payload=_signal().model_dump(mode="json"),
        ))
        assert len(execution.get_order_history()) == 1


# =============================================================================
# Monitoring
# =============================================================================


class TestMonitorOrders:
    """Tests for ExecutionService.monitor_orders()."""

    @pytest.mark.asyncio
    async def test_sim_orders_complete_on_next_pass(self, execution):
        await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        await execution.monitor_orders()
        assert execution.get_pending_orders() == []

    @pytest.mark.asyncio
    async def test_timed_out_order_after_max_retries_is_cancelled_and_failed(
        self, bus, live_execution, mock_exchange_client, order_updates
    ):
        """Failure: an order stale past the timeout with attempts exhausted is cancelled, not retried."""
        order = _live_order()
        mock_exchange_client.place_order.return_value = order
        mock_exchange_client.get_order.return_value = order
        mock_exchange_client.cancel_order.return_value = order.model_copy(update={"status": OrderStatus.CANCELED})
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )
        tracked = live_execution.get_pending_orders()[0]
        tracked.attempts = live_execution.config.max_order_retries
        tracked.last_attempt = datetime.utcnow() - timedelta(seconds=60)

        await live_execution.monitor_orders()
        await live_execution.monitor_orders()
        await bus.join()

        mock_exchange_client.cancel_order.assert_awaited_once()
        assert live_execution.get_pending_orders() == []
        assert tracked.status == TrackingStatus.FAILED
        assert {"order_id": "ord-1", "status": "FAILED", "reason": "timeout"} in order_updates

    @pytest.mark.asyncio
    async def test_stale_order_with_retries_left_is_retried(self, live_execution, mock_exchange_client):
        """Edge case: a stale order with retries left increments attempts instead of cancelling."""
        order = _live_order()
        mock_exchange_client.place_order.return_value = order
        mock_exchange_client.get_order.return_value = order
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )
        tracked = live_execution.get_pending_orders()[0]
        tracked.last_attempt = datetime.utcnow() - timedelta(seconds=60)

        await live_execution.monitor_orders()

        assert tracked.attempts == 1
        assert tracked.status == TrackingStatus.EXECUTING
        mock_exchange_client.cancel_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_filled_live_order_leaves_tracking_and_records_trade(
        self, session_factory, live_execution, mock_exchange_client
    ):
        """Happy path: a live fill is persisted with a trade and completes tracking."""
        mock_exchange_client.place_order.return_value = _live_order()
        mock_exchange_client.get_order.return_value = _live_order(status=OrderStatus.FILLED, executed_qty=1.0)
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )
        tracked = live_execution.get_pending_orders()[0]

        await live_execution.monitor_orders()

        assert tracked.status == TrackingStatus.COMPLETED
        assert live_execution.get_pending_orders() == []
        async with session_factory() as db:
            row = await db.get(Order, "ord-1")
            trade = (await db.execute(select(Trade).where(Trade.order_id == "ord-1"))).scalars().one()
        assert row.status == "FILLED"
        assert trade.realized_pnl is None
        assert trade.mode == "LIVE"

    @pytest.mark.asyncio
    async def test_rejected_live_order_fails_tracking(self, live_execution, mock_exchange_client):
        mock_exchange_client.place_order.return_value = _live_order()
        mock_exchange_client.get_order.return_value = _live_order(status=OrderStatus.REJECTED)
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )
        tracked = live_execution.get_pending_orders()[0]
        await live_execution.monitor_orders()
        assert tracked.status == TrackingStatus.FAILED
        assert live_execution.get_pending_orders() == []

    @pytest.mark.asyncio
    async def test_nearly_filled_order_remainder_cancelled(
        self, session_factory, live_execution, mock_exchange_client
    ):
        """Edge case: 95% filled is within the partial-fill threshold, so the rest is cancelled."""
        partial = _live_order(status=OrderStatus.PARTIALLY_FILLED, executed_qty=0.95)
        mock_exchange_client.place_order.return_value = _live_order()
        mock_exchange_client.get_order.return_value = partial
        mock_exchange_client.cancel_order.return_value = partial.model_copy(update={"status": OrderStatus.CANCELED})
        await live_execution.create_order(OrderRequest(
            symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0,
            strategy_id="momentum",
        ))
        tracked = live_execution.get_pending_orders()[0]

        await live_execution.monitor_orders()

        mock_exchange_client.cancel_order.assert_awaited_once()
        assert tracked.status == TrackingStatus.COMPLETED
        assert live_execution.get_pending_orders() == []

        # The executed part is kept in trade history
        async with session_factory() as db:
            row = await db.get(Order, "ord-1")
            trade = (await db.execute(select(Trade).where(Trade.order_id == "ord-1"))).scalars().one()
        assert row.status == "CANCELED"
        assert trade.quantity == pytest.approx(0.95)
        assert trade.price == pytest.approx(100.0)
        assert trade.strategy_id == "momentum"

    @pytest.mark.asyncio
    async def test_cancelled_order_without_fills_records_no_trade(
        self, session_factory, live_execution, mock_exchange_client
    ):
        mock_exchange_client.place_order.return_value = _live_order()
        mock_exchange_client.cancel_order.return_value = _live_order(status=OrderStatus.CANCELED)
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )

        assert await live_execution.cancel_order("ord-1") is True

        async with session_factory() as db:
            trades = (await db.execute(select(Trade))).scalars().all()
        assert trades == []

    @pytest.mark.asyncio
    async def test_unknown_to_venue_stays_pending(self, live_execution, mock_exchange_client):
        mock_exchange_client.place_order.return_value = _live_order()
        mock_exchange_client.get_order.return_value = None
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )
        await live_execution.monitor_orders()
        assert len(live_execution.get_pending_orders()) == 1

    @pytest.mark.asyncio
    async def test_one_failing_order_does_not_block_others(self, live_execution, mock_exchange_client):
        """Failure: an error fetching one order leaves the other orders processed."""
        mock_exchange_client.place_order.side_effect = [_live_order("ord-1"), _live_order("ord-2")]

        async def get_order(order_id, symbol=None):
            if order_id == "ord-1":
                raise APIError("timeout")
            return _live_order("ord-2", status=OrderStatus.FILLED, executed_qty=1.0)

        mock_exchange_client.get_order.side_effect = get_order
        for _ in range(2):
            await live_execution.create_order(
                OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
            )

        await live_execution.monitor_orders()

        assert [t.order.id for t in live_execution.get_pending_orders()] == ["ord-1"]


# =============================================================================
# Positions
# =============================================================================


class TestClosePositions:
    """Tests for close_position()/close_all_positions()."""

    @pytest.mark.asyncio
    async def test_close_sim_position_records_realized_pnl(self, session_factory, execution, sim_client):
        """Happy path: an opposing reduce-only order flattens and books the round trip."""
        await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))

        assert await execution.close_position("BTCUSDT") is True
        assert await sim_client.get_positions() == []

        close_order = execution.get_order_history()[-1]
        assert close_order.side == OrderSide.SELL
        async with session_factory() as db:
            trade = (await db.execute(select(Trade).where(Trade.order_id == close_order.id))).scalars().one()
        # sold at 99.95 against a 100.05 entry, minus the 0.03998 fee
        assert trade.realized_pnl == pytest.approx(-0.13998)
        assert trade.strategy_id == "close"

    @pytest.mark.asyncio
    async def test_close_without_position_succeeds(self, execution):
        assert await execution.close_position("BTCUSDT") is True

    @pytest.mark.asyncio
    async def test_close_while_lock_held_fails(self, cache, execution, sim_client):
        """Edge case: a concurrent close holding the symbol lock makes this one fail."""
        await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        real_lock = cache.lock

        def quick_lock(name, timeout=10.0):
            return real_lock(name, timeout=0.01)

        cache.lock = quick_lock
        async with real_lock("close:BTCUSDT"):
            assert await execution.close_position("BTCUSDT") is False

    @pytest.mark.asyncio
    async def test_close_all_is_and_of_results(self, live_execution, mock_exchange_client):
        """Failure: one failed close makes close_all report False."""
        mock_exchange_client.get_positions.return_value = [
            Position(symbol="BTCUSDT", side=PositionSide.LONG, size=1.0, entry_price=100.0, mark_price=100.0),
            Position(symbol="ETHUSDT", side=PositionSide.SHORT, size=2.0, entry_price=10.0, mark_price=10.0),
        ]

        async def place_order(request):
            if request.symbol == "ETHUSDT":
                raise APIError("reduce-only rejected")
            assert request.reduce_only is True
            assert request.side == OrderSide.SELL
            return _live_order(symbol=request.symbol)

        mock_exchange_client.place_order.side_effect = place_order

        assert await live_execution.close_all_positions() is False
        assert mock_exchange_client.place_order.await_count == 2

    @pytest.mark.asyncio
    async def test_close_all_with_no_positions(self, live_execution):
        assert await live_execution.close_all_positions() is True


class TestCalculateRealizedPnl:
    """Tests for calculate_realized_pnl()."""

    def test_closing_short(self):
        positions = [Position(symbol="BTCUSDT", side=PositionSide.SHORT, size=2.0, entry_price=110.0, mark_price=100.0)]
        fill = _live_order(status=OrderStatus.FILLED, executed_qty=1.0)
        fill = fill.model_copy(update={"fee": 0.5})
        assert calculate_realized_pnl(positions, fill) == pytest.approx(9.5)

    def test_opening_fill_only_pays_fee(self):
        fill = _live_order(status=OrderStatus.FILLED, executed_qty=1.0).model_copy(update={"fee": 0.1})
        assert calculate_realized_pnl([], fill) == pytest.approx(-0.1)


# =============================================================================
# Emergency stop and lifecycle
# =============================================================================


class TestEmergencyStop:
    """Tests for ExecutionService.emergency_stop()."""

    @pytest.mark.asyncio
    async def test_emergency_stop_flattens_and_empties_pending(self, execution, sim_client):
        """Happy path: positions closed, monitoring halted, nothing pending."""
        await execution.start()
        await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))

        results = await execution.emergency_stop()

        assert set(results) == {"cancel_orders", "close_positions", "halt_monitoring"}
        assert results["close_positions"]["success"] is True
        assert execution.get_pending_orders() == []
        assert execution.is_monitoring is False
        assert execution.accepting_signals is False
        assert await sim_client.get_positions() == []
        with pytest.raises(ExecutionError, match="shutdown in progress"):
            await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        await execution.stop()

    @pytest.mark.asyncio
    async def test_signal_sized_across_emergency_stop_places_nothing(
        self, bus, cache, session_factory, sim_client, risk_responder
    ):
        """Edge case: a sizing reply that arrives after the stop opens no position."""
        execution = ExecutionService(
            bus, sim_client, cache, session_factory, interval_seconds=60, request_timeout=2.0
        )
        release = asyncio.Event()
        risk_responder(PROPOSAL, before_reply=release.wait)
        execution.accepting_signals = True

        sizing = asyncio.create_task(execution.handle_trading_signal(_signal()))
        await asyncio.sleep(0.05)
        await execution.emergency_stop()
        release.set()

        assert await sizing is None
        assert execution.get_pending_orders() == []
        assert execution.get_order_history() == []
        assert await sim_client.get_positions() == []

    @pytest.mark.asyncio
    async def test_submission_at_venue_is_waited_for_and_flattened(self, execution, sim_client):
        """Edge case: an order already being placed is tracked, then closed by the stop."""
        release = asyncio.Event()
        place_order = sim_client.place_order

        async def slow_place_order(request):
            await release.wait()
            return await place_order(request)

        sim_client.place_order = slow_place_order
        submitting = asyncio.create_task(
            execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        )
        await asyncio.sleep(0.01)
        stopping = asyncio.create_task(execution.emergency_stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        release.set()
        opened = await submitting
        results = await stopping

        assert opened.status == OrderStatus.FILLED
        assert results["close_positions"]["success"] is True
        assert await sim_client.get_positions() == []
        assert execution.get_pending_orders() == []

    @pytest.mark.asyncio
    async def test_start_trading_reopens_submissions(self, execution):
        await execution.emergency_stop()
        await execution.handle_command(Message(topic=EXECUTION_COMMANDS_TOPIC, type=START_TRADING))

        order = await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))

        assert order.status == OrderStatus.FILLED
        assert execution.accepting_signals is True
        await execution.stop()

    @pytest.mark.asyncio
    async def test_emergency_stop_survives_venue_failures(self, live_execution, mock_exchange_client):
        """Failure: cancel and close errors are reported and pending still ends empty."""
        mock_exchange_client.place_order.return_value = _live_order()
        mock_exchange_client.cancel_order.side_effect = APIError("exchange down")
        await live_execution.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, type=OrderType.LIMIT, quantity=1.0, price=100.0)
        )
        mock_exchange_client.get_positions.side_effect = APIError("exchange down")

        results = await live_execution.emergency_stop()

        assert results["cancel_orders"]["success"] is True
        assert results["cancel_orders"]["cancelled"] == 0
        assert results["close_positions"]["success"] is False
        assert results["halt_monitoring"]["success"] is True
        assert live_execution.get_pending_orders() == []


class TestLifecycle:
    """Tests for start/stop, commands and config."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, bus, execution):
        await execution.start()
        assert execution.accepting_signals is True
        assert execution.is_monitoring is True
        assert bus.subscriber_count(TRADING_SIGNALS_TOPIC) == 1

        await execution.stop()
        assert execution.is_monitoring is False
        assert bus.subscriber_count(TRADING_SIGNALS_TOPIC) == 0
        with pytest.raises(ExecutionError, match="shutdown in progress"):
            await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))

    @pytest.mark.asyncio
    async def test_stop_and_start_trading_commands(self, execution):
        """Happy path: STOP_TRADING stops accepting signals, START_TRADING resumes."""
        await execution.start()
        await execution.handle_command(Message(topic=EXECUTION_COMMANDS_TOPIC, type=STOP_TRADING))
        assert execution.accepting_signals is False
        assert execution.is_monitoring is True

        await execution.handle_command(Message(topic=EXECUTION_COMMANDS_TOPIC, type=START_TRADING))
        assert execution.accepting_signals is True
        await execution.stop()

    @pytest.mark.asyncio
    async def test_history_restores_simulated_ledger(self, bus, cache, session_factory, execution, sim_client):
        """Happy path: a restarted service replays persisted SIM fills."""
        await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))

        fresh_client = SimulatedExchangeClient(cache, starting_balance=10000.0)
        fresh = ExecutionService(bus, fresh_client, cache, session_factory, interval_seconds=60)
        await fresh.load_order_history()

        positions = await fresh_client.get_positions()
        assert [(p.symbol, p.side, p.size) for p in positions] == [("BTCUSDT", PositionSide.LONG, 1.0)]
        assert fresh_client.balance == pytest.approx(sim_client.balance)
        assert len(fresh.get_order_history()) == 1

    @pytest.mark.asyncio
    async def test_reset_simulated_balance(self, execution, sim_client):
        await execution.create_order(OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=1.0))
        assert await execution.reset_simulated_balance(5000.0) == 5000.0
        assert execution.get_pending_orders() == []
        assert await sim_client.get_positions() == []

    @pytest.mark.asyncio
    async def test_reset_rejects_bad_amount_and_live_mode(self, execution, live_execution):
        with pytest.raises(ValidationError):
            await execution.reset_simulated_balance(-1.0)
        with pytest.raises(ValidationError, match="simulation mode"):
            await live_execution.reset_simulated_balance()

    def test_update_config(self, execution):
        """Happy path: a valid patch updates the settings."""
        config = execution.update_config({"max_order_retries": 5, "order_timeout_seconds": 60})
        assert config.max_order_retries == 5
        assert config.order_timeout_seconds == 60

    @pytest.mark.parametrize("patch", [
        {"max_order_retries": 0},
        {"order_timeout_seconds": 1},
        {"slippage_tolerance": 10},
        {"simulation_mode": False},
        {"unknown": 1},
    ])
    def test_update_config_rejects_invalid(self, execution, patch):
        """Failure: out-of-range, read-only or unknown keys are rejected."""
        with pytest.raises(ValidationError):
            execution.update_config(patch)
        assert execution.config == ExecutionConfig(simulation_mode=True)

    def test_metrics(self, execution):
        metrics = execution.metrics()
        assert metrics["simulation_mode"] is True
        assert metrics["pending_orders"] == 0
        assert metrics["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_account_state(self, live_execution):
        state = await live_execution.get_account_state()
        assert state.total_balance == 10000.0
        assert state.available_balance == 8000.0
        assert state.positions == []
