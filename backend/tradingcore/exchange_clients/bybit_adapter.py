"""
ByBit Futures Adapter

Implements the ExchangeClient ABC for ByBit V5 USDT linear perpetuals
(category="linear"). Wraps ByBitClient and maps raw V5 responses onto
OrderRecord / Position / Observation with canonical order statuses.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from tradingcore.exceptions import NotFoundError
from tradingcore.exchange_clients.base import ExchangeClient
from tradingcore.exchange_clients.bybit_client import ByBitClient
from tradingcore.schemas import (
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

CATEGORY = "linear"

# OrderType -> (ByBit orderType, uses trigger price)
_ORDER_TYPE_MAP = {
    OrderType.MARKET: ("Market", False),
    OrderType.LIMIT: ("Limit", False),
    OrderType.STOP: ("Limit", True),
    OrderType.STOP_MARKET: ("Market", True),
    OrderType.TAKE_PROFIT: ("Limit", True),
    OrderType.TAKE_PROFIT_MARKET: ("Market", True),
}

# triggerDirection: 1 = fires when price rises to trigger, 2 = when it falls
_RISING, _FALLING = 1, 2


def _fmt(value: float) -> str:
    """Format a number for the V5 API without scientific notation."""
    return f"{value:.8f}".rstrip("0").rstrip(".")


def _float(value: Any, default: float = 0.0) -> float:
    """ByBit returns numbers as strings, sometimes empty."""
    if value in (None, ""):
        return default
    return float(value)


def _ms_to_datetime(value: Any) -> datetime:
    if not value:
        return datetime.utcnow()
    return datetime.utcfromtimestamp(int(value) / 1000)


class BybitFuturesClient(ExchangeClient):
    """
    ExchangeClient implementation for ByBit V5 (unified account).

    - All trades use category="linear" (USDT linear perpetuals)
    - Leverage is set per symbol before each order
    - Position mode: one-way
    """

    def __init__(self, client: ByBitClient):
        self._client = client

    # ==========================================================
    # ACCOUNT & BALANCE
    # ==========================================================

    async def get_balance(self) -> Dict[str, float]:
        resp = await self._client.get_wallet_balance()
        for acct in resp.get("result", {}).get("list", []):
            return {
                "total": _float(acct.get("totalWalletBalance")),
                "available": _float(acct.get("totalAvailableBalance")),
            }
        return {"total": 0.0, "available": 0.0}

    async def get_positions(self) -> List[Position]:
        resp = await self._client.get_positions(category=CATEGORY)
        positions = []
        for pos in resp.get("result", {}).get("list", []):
            size = _float(pos.get("size"))
            if size <= 0:
                continue
            liq_price = _float(pos.get("liqPrice"))
            positions.append(Position(
                symbol=pos.get("symbol", ""),
                side=PositionSide.LONG if pos.get("side") == "Buy" else PositionSide.SHORT,
                size=size,
                entry_price=_float(pos.get("avgPrice")),
                mark_price=_float(pos.get("markPrice")),
                unrealized_pnl=_float(pos.get("unrealisedPnl")),
                leverage=max(1, int(_float(pos.get("leverage"), 1))),
                margin_used=_float(pos.get("positionIM")),
                liquidation_price=liq_price or None,
            ))
        return positions

    # ==========================================================
    # ORDERS
    # ==========================================================

    async def place_order(self, request: OrderRequest) -> OrderRecord:
        if not request.reduce_only:
            await self._client.set_leverage(request.symbol, request.leverage)

        order_type, triggered = _ORDER_TYPE_MAP[request.type]
        trigger_price = None
        trigger_direction = None
        if triggered:
            trigger_price = _fmt(request.stop_price or request.price)
            is_stop = request.type in (OrderType.STOP, OrderType.STOP_MARKET)
            buying = request.side == OrderSide.BUY
            # Stops fire against the position, take-profits in its favour
            trigger_direction = _RISING if buying == is_stop else _FALLING

        resp = await self._client.place_order(
            symbol=request.symbol,
            side=request.side.value,
            order_type=order_type,
            qty=_fmt(request.quantity),
            category=CATEGORY,
            price=_fmt(request.price) if request.price is not None and order_type == "Limit" else None,
            trigger_price=trigger_price,
            trigger_direction=trigger_direction,
            time_in_force=request.time_in_force,
            reduce_only=request.reduce_only,
        )
        order_id = resp.get("result", {}).get("orderId", "")
        logger.info(
            f"ByBit order placed: {request.side.value} {request.quantity} {request.symbol} "
            f"({request.type.value}) -> {order_id}"
        )
        now = datetime.utcnow()
        return OrderRecord(
            id=order_id,
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            quantity=request.quantity,
            price=request.price,
            stop_price=request.stop_price,
            status=OrderStatus.NEW,
            leverage=request.leverage,
            external_order_id=order_id,
            mode="LIVE",
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _normalize_order_status(bybit_status: str) -> OrderStatus:
        """Map ByBit PascalCase order statuses onto OrderStatus.

        ByBit V5 returns: New, PartiallyFilled, Filled, Cancelled,
        PartiallyFilledCanceled, Rejected, Deactivated, Untriggered, Triggered.
        """
        mapping = {
            "New": OrderStatus.NEW,
            "PartiallyFilled": OrderStatus.PARTIALLY_FILLED,
            "Filled": OrderStatus.FILLED,
            "Cancelled": OrderStatus.CANCELED,
            "PartiallyFilledCanceled": OrderStatus.CANCELED,
            "Deactivated": OrderStatus.CANCELED,
            "Rejected": OrderStatus.REJECTED,
            "Untriggered": OrderStatus.NEW,
            "Triggered": OrderStatus.NEW,
        }
        if bybit_status in mapping:
            return mapping[bybit_status]
        try:
            return OrderStatus(bybit_status.upper())
        except ValueError:
            logger.warning(f"Unknown ByBit order status {bybit_status!r}, treating as NEW")
            return OrderStatus.NEW

    @staticmethod
    def _order_type(raw: Dict[str, Any]) -> OrderType:
        is_market = raw.get("orderType") == "Market"
        stop_type = raw.get("stopOrderType") or ""
        if stop_type in ("TakeProfit", "PartialTakeProfit"):
            return OrderType.TAKE_PROFIT_MARKET if is_market else OrderType.TAKE_PROFIT
        if stop_type:
            return OrderType.STOP_MARKET if is_market else OrderType.STOP
        return OrderType.MARKET if is_market else OrderType.LIMIT

    def _to_record(self, raw: Dict[str, Any]) -> OrderRecord:
        order_id = raw.get("orderId", "")
        avg_price = _float(raw.get("avgPrice"))
        return OrderRecord(
            id=order_id,
            symbol=raw.get("symbol", ""),
            side=OrderSide(raw.get("side", "Buy").upper()),
            type=self._order_type(raw),
            quantity=_float(raw.get("qty")),
            price=_float(raw.get("price")) or None,
            stop_price=_float(raw.get("triggerPrice")) or None,
            status=self._normalize_order_status(raw.get("orderStatus", "")),
            executed_qty=_float(raw.get("cumExecQty")),
            average_price=avg_price or None,
            fee=_float(raw.get("cumExecFee")),
            external_order_id=order_id,
            mode="LIVE",
            created_at=_ms_to_datetime(raw.get("createdTime")),
            updated_at=_ms_to_datetime(raw.get("updatedTime")),
        )

    async def get_order(self, order_id: str, symbol: Optional[str] = None) -> Optional[OrderRecord]:
        # Open orders first (realtime), then history
        resp = await self._client.get_open_orders(category=CATEGORY, symbol=symbol, order_id=order_id)
        orders = resp.get("result", {}).get("list", [])
        if not orders:
            resp = await self._client.get_order_history(category=CATEGORY, symbol=symbol, order_id=order_id)
            orders = resp.get("result", {}).get("list", [])
        for raw in orders:
            if raw.get("orderId") == order_id:
                return self._to_record(raw)
        return None

    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> OrderRecord:
        order = await self.get_order(order_id, symbol)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found on ByBit")
        if order.is_terminal:
            return order

        await self._client.cancel_order(symbol=order.symbol, order_id=order_id, category=CATEGORY)
        logger.info(f"ByBit order cancelled: {order_id}")
        return order.model_copy(update={"status": OrderStatus.CANCELED, "updated_at": datetime.utcnow()})

    # ==========================================================
    # MARKET DATA
    # ==========================================================

    async def _ticker(self, symbol: str) -> Dict[str, Any]:
        resp = await self._client.get_tickers(category=CATEGORY, symbol=symbol)
        for ticker in resp.get("result", {}).get("list", []):
            if ticker.get("symbol") == symbol:
                return ticker
        raise NotFoundError(f"No ByBit ticker for {symbol}")

    async def get_ticker(self, symbol: str) -> Observation:
        ticker = await self._ticker(symbol)
        mark_price = _float(ticker.get("markPrice"))
        return Observation(
            symbol=symbol,
            price=_float(ticker.get("lastPrice")),
            volume_24h=_float(ticker.get("volume24h")),
            price_change_24h=_float(ticker.get("price24hPcnt")) * 100,
            funding_rate=_float(ticker.get("fundingRate")),
            mark_price=mark_price or None,
        )

    async def get_funding_rate(self, symbol: str) -> float:
        ticker = await self._ticker(symbol)
        return _float(ticker.get("fundingRate"))
