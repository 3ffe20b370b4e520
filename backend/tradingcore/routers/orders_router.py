"""
Orders Router

Create, list and cancel orders through the execution service.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from tradingcore.exceptions import NotFoundError
from tradingcore.routers.dependencies import get_trading_system
from tradingcore.schemas import OrderRecord, OrderRequest, OrderStatus
from tradingcore.services.trading_system import TradingSystem

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", response_model=OrderRecord)
async def create_order(request: OrderRequest, system: TradingSystem = Depends(get_trading_system)):
    return await system.execution.create_order(request)


@router.get("", response_model=List[OrderRecord])
async def list_orders(
    status: Optional[OrderStatus] = None,
    symbol: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    system: TradingSystem = Depends(get_trading_system),
):
    """Persisted orders, newest first"""
    return await system.execution.get_orders(status=status, symbol=symbol, limit=limit)


@router.get("/pending")
async def list_pending_orders(system: TradingSystem = Depends(get_trading_system)):
    return [
        {
            "order": tracked.order.model_dump(mode="json"),
            "status": tracked.status.value,
            "attempts": tracked.attempts,
            "last_attempt": tracked.last_attempt.isoformat(),
        }
        for tracked in system.execution.get_pending_orders()
    ]


@router.delete("/{order_id}")
async def cancel_order(order_id: str, system: TradingSystem = Depends(get_trading_system)):
    if await system.execution.find_order(order_id) is None:
        raise NotFoundError(f"Order {order_id} not found")
    cancelled = await system.execution.cancel_order(order_id)
    return {"order_id": order_id, "cancelled": cancelled}
