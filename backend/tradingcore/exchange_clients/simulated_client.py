"""
Simulated Exchange Client

Paper venue for SIM mode. Uses real market data (latest cached observation,
or a live market-data client when one is provided) for prices, but fills
every order instantly against a simulated balance ledger.

- MARKET orders pay a size-dependent slippage in the adverse direction
- Non-market orders fill at their own price without slippage
- Taker fee is 0.04% of notional
- BUY debits notional + fee, SELL credits notional - fee
- Positions are rebuilt by replaying filled orders in time order
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from tradingcore.cache import SimpleCache
from tradingcore.config import settings
from tradingcore.constants import (
    MARKET_CACHE_PREFIX,
    ORDER_HISTORY_SIZE,
    SIM_EXECUTION_CACHE_PREFIX,
    SIM_EXECUTION_CACHE_TTL,
)
from tradingcore.exceptions import APIError, ValidationError
from tradingcore.exchange_clients.base import ExchangeClient
from tradingcore.schemas import (
    TERMINAL_ORDER_STATUSES,
    Observation,
    OrderRecord,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
)

logger = logging.getLogger(__name__)

BASE_SLIPPAGE_PCT = 0.05
SLIPPAGE_REFERENCE_NOTIONAL = 10000.0
SLIPPAGE_IMPACT_FACTOR = 0.01
TAKER_FEE_RATE = 0.0004
SIZE_EPSILON = 1e-12


def calculate_slippage(quantity: float, price: float) -> float:
    """
    Slippage in percent for a market order.

    0.05% base plus 0.01 x ln(notional / 10,000). The log term only adds
    slippage above $10,000 notional; below it the base applies.
    """
    notional = quantity * price
    if notional <= 0:
        return BASE_SLIPPAGE_PCT
    volume_impact = math.log(notional / SLIPPAGE_REFERENCE_NOTIONAL) * SLIPPAGE_IMPACT_FACTOR
    return BASE_SLIPPAGE_PCT + max(0.0, volume_impact)


def apply_slippage(price: float, side: OrderSide, slippage_pct: float) -> float:
    """BUY pays up, SELL receives less."""
    factor = slippage_pct / 100
    if side == OrderSide.BUY:
        return price * (1 + factor)
    return price * (1 - factor)


def calculate_fee(quantity: float, executed_price: float) -> float:
    return TAKER_FEE_RATE * quantity * executed_price


def replay_positions(
    fills: Iterable[OrderRecord],
    mark_prices: Optional[Dict[str, float]] = None,
) -> List[Position]:
    """
    Rebuild open positions from filled orders.

    A BUY adds to the signed size and a SELL subtracts. Adding in the
    position's direction moves the entry to the notional-weighted average;
    reducing keeps the entry; crossing through zero starts a new position
    at the fill price. Flat symbols are dropped.
    """
    mark_prices = mark_prices or {}
    book: Dict[str, Dict[str, float]] = {}

    for order in sorted(fills, key=lambda o: o.created_at):
        if order.status != OrderStatus.FILLED or not order.executed_qty or order.average_price is None:
            continue
        qty = order.executed_qty
        price = order.average_price
        signed_qty = qty if order.side == OrderSide.BUY else -qty

        current = book.get(order.symbol, {"size": 0.0, "entry": 0.0, "leverage": 1})
        old_size = current["size"]
        new_size = old_size + signed_qty

        if abs(new_size) < SIZE_EPSILON:
            book.pop(order.symbol, None)
            continue

        if old_size == 0 or old_size * signed_qty > 0:
            entry = (current["entry"] * abs(old_size) + price * qty) / abs(new_size)
        elif old_size * new_size < 0:
            entry = price
        else:
            entry = current["entry"]

        book[order.symbol] = {
            "size": new_size,
            "entry": entry,
            "leverage": max(1, order.leverage or 1),
        }

    positions = []
    for symbol, p in book.items():
        size = p["size"]
        entry = p["entry"]
        leverage = int(p["leverage"])
        mark = mark_prices.get(symbol, entry)
        positions.append(Position(
            symbol=symbol,
            side=PositionSide.LONG if size > 0 else PositionSide.SHORT,
            size=abs(size),
            entry_price=entry,
            mark_price=mark,
            unrealized_pnl=(mark - entry) * size,
            leverage=leverage,
            margin_used=abs(size) * entry / leverage,
        ))
    return positions


class SimulatedExchangeClient(ExchangeClient):
    """
    Simulated venue for paper trading.

    Every order fills synchronously, so there is nothing to poll afterwards.
    """

    def __init__(
        self,
        cache: SimpleCache,
        starting_balance: Optional[float] = None,
        market_data: Optional[ExchangeClient] = None,
    ):
        self.cache = cache
        self.market_data = market_data  # Real client for tickers, if any
        self.starting_balance = (
            starting_balance if starting_balance is not None else settings.simulated_starting_balance
        )
        self.balance = self.starting_balance
        self._lock = asyncio.Lock()
        self._order_cache: Dict[str, OrderRecord] = {}
        self._fills: List[OrderRecord] = []
        logger.info(f"Initialized simulated exchange (balance: {self.balance:.2f})")

    def is_simulated(self) -> bool:
        return True

    # ========================================
    # ACCOUNT & BALANCE
    # ========================================

    async def get_balance(self) -> Dict[str, float]:
        """Cash plus cost basis of open positions; available is the cash alone."""
        async with self._lock:
            positions = replay_positions(self._fills)
            cash = self.balance
        cost_basis = sum(
            (p.size if p.side == PositionSide.LONG else -p.size) * p.entry_price for p in positions
        )
        return {"total": cash + cost_basis, "available": cash}

    async def get_positions(self) -> List[Position]:
        async with self._lock:
            fills = list(self._fills)
        symbols = {f.symbol for f in fills}
        marks = {}
        for symbol in symbols:
            observation = await self.cache.get(f"{MARKET_CACHE_PREFIX}{symbol}")
            if observation is not None:
                marks[symbol] = observation.price
        return replay_positions(fills, marks)

    async def reset_balance(self, amount: Optional[float] = None) -> float:
        """Reset the ledger and flatten all simulated positions."""
        async with self._lock:
            self.balance = amount if amount is not None else self.starting_balance
            self._fills.clear()
            self._order_cache.clear()
        logger.info(f"Simulated balance reset to {self.balance:.2f}")
        return self.balance

    def restore_fills(self, orders: Iterable[OrderRecord]):
        """
        Seed the replay source with previously persisted fills (startup only).

        The cash ledger is replayed from the starting balance as well.
        """
        for order in sorted(orders, key=lambda o: o.created_at):
            if order.status != OrderStatus.FILLED or order.mode != "SIM" or order.average_price is None:
                continue
            notional = order.executed_qty * order.average_price
            if order.side == OrderSide.BUY:
                self.balance -= notional + order.fee
            else:
                self.balance += notional - order.fee
            self._fills.append(order)
            self._order_cache[order.id] = order
        logger.info(f"Restored {len(self._fills)} simulated fills (balance: {self.balance:.2f})")

    # ========================================
    # ORDERS
    # ========================================

    async def _reference_price(self, request: OrderRequest) -> float:
        observation = await self.cache.get(f"{MARKET_CACHE_PREFIX}{request.symbol}")
        if observation is not None:
            return observation.price
        if request.price is not None:
            return request.price
        raise ValidationError(f"No market price available for {request.symbol}")

    async def place_order(self, request: OrderRequest) -> OrderRecord:
        reference_price = await self._reference_price(request)

        if request.type == OrderType.MARKET:
            slippage = calculate_slippage(request.quantity, reference_price)
            executed_price = apply_slippage(reference_price, request.side, slippage)
        else:
            slippage = 0.0
            executed_price = request.price if request.price is not None else reference_price

        notional = request.quantity * executed_price
        fee = calculate_fee(request.quantity, executed_price)
        now = datetime.utcnow()

        async with self._lock:
            if request.side == OrderSide.BUY:
                self.balance -= notional + fee
            else:
                self.balance += notional - fee

            order = OrderRecord(
                id=f"sim_{uuid.uuid4().hex}",
                symbol=request.symbol,
                side=request.side,
                type=request.type,
                quantity=request.quantity,
                price=request.price,
                stop_price=request.stop_price,
                status=OrderStatus.FILLED,
                executed_qty=request.quantity,
                average_price=executed_price,
                fee=fee,
                leverage=request.leverage,
                mode="SIM",
                created_at=now,
                updated_at=now,
            )
            self._fills.append(order)
            self._order_cache[order.id] = order
            if len(self._order_cache) > ORDER_HISTORY_SIZE:
                oldest = next(iter(self._order_cache))
                del self._order_cache[oldest]
            balance_after = self.balance

        await self.cache.set(
            f"{SIM_EXECUTION_CACHE_PREFIX}{order.id}",
            {
                "order_id": order.id,
                "reference_price": reference_price,
                "executed_price": executed_price,
                "slippage": slippage,
                "fee": fee,
                "balance_after": balance_after,
            },
            SIM_EXECUTION_CACHE_TTL,
        )

        logger.info(
            f"📝 SIM {request.side.value} {request.quantity} {request.symbol} @ {executed_price:.4f} "
            f"(slippage {slippage:.4f}%, fee {fee:.4f}, balance {balance_after:.2f})"
        )
        return order

    async def get_order(self, order_id: str, symbol: Optional[str] = None) -> Optional[OrderRecord]:
        return self._order_cache.get(order_id)

    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> OrderRecord:
        """Mark a simulated order CANCELED. Already-terminal orders are returned unchanged."""
        async with self._lock:
            order = self._order_cache.get(order_id)
            if order is None:
                raise ValidationError(f"Unknown simulated order {order_id}")
            if order.status in TERMINAL_ORDER_STATUSES:
                return order
            cancelled = order.model_copy(
                update={"status": OrderStatus.CANCELED, "updated_at": datetime.utcnow()}
            )
            self._order_cache[order_id] = cancelled
            return cancelled

    # ========================================
    # MARKET DATA
    # ========================================

    async def get_ticker(self, symbol: str) -> Observation:
        if self.market_data is not None:
            return await self.market_data.get_ticker(symbol)
        observation = await self.cache.get(f"{MARKET_CACHE_PREFIX}{symbol}")
        if observation is None:
            raise APIError(f"No market data for {symbol}", status_code=503)
        return observation

    async def get_funding_rate(self, symbol: str) -> float:
        observation = await self.cache.get(f"{MARKET_CACHE_PREFIX}{symbol}")
        if observation is not None:
            return observation.funding_rate
        if self.market_data is not None:
            return await self.market_data.get_funding_rate(symbol)
        return 0.0
