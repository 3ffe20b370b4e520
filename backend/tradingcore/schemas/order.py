"""Order, tracking and position schemas"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"
    STOP_MARKET = "STOP_MARKET"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED, OrderStatus.EXPIRED,
})


class TrackingStatus(str, Enum):
    """Local retry bookkeeping; never persisted as order state"""

    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class OrderRequest(BaseModel):
    symbol: str
    side: OrderSide
    type: OrderType = OrderType.MARKET
    quantity: float = Field(gt=0)
    price: Optional[float] = Field(default=None, gt=0)
    stop_price: Optional[float] = Field(default=None, gt=0)
    leverage: int = Field(default=1, ge=1, le=125)
    time_in_force: str = "GTC"
    reduce_only: bool = False
    strategy_id: Optional[str] = None

    @model_validator(mode="after")
    def require_limit_price(self):
        if self.type == OrderType.LIMIT and self.price is None:
            raise ValueError("LIMIT orders require a price")
        if self.type in (OrderType.STOP, OrderType.STOP_MARKET) and self.stop_price is None:
            raise ValueError(f"{self.type.value} orders require a stop_price")
        return self


class OrderRecord(BaseModel):
    id: str
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: float
    price: Optional[float] = None
    stop_price: Optional[float] = None
    status: OrderStatus
    executed_qty: float = 0.0
    average_price: Optional[float] = None
    fee: float = 0.0
    leverage: int = 1
    external_order_id: Optional[str] = None
    mode: str = "SIM"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


class Position(BaseModel):
    symbol: str
    side: PositionSide
    size: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float = 0.0
    leverage: int = 1
    margin_used: float = 0.0
    liquidation_price: Optional[float] = None
