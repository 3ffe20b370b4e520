"""
ExchangeClient Abstract Base Class

This module defines the interface every execution venue must implement:
the simulated paper venue and live perpetual-futures exchanges. Execution
and risk only talk to this interface.

Design Philosophy:
- Methods return the schemas in tradingcore.schemas (OrderRecord, Position, Observation)
- Order statuses are mapped onto the canonical OrderStatus enum by each client
- All prices are floats in quote currency (USDT); all sizes are floats in contracts
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from tradingcore.schemas import Observation, OrderRecord, OrderRequest, Position


class ExchangeClient(ABC):
    """Abstract base class for all execution venues."""

    # ========================================
    # ACCOUNT & BALANCE METHODS
    # ========================================

    @abstractmethod
    async def get_balance(self) -> Dict[str, float]:
        """
        Get the futures wallet balance.

        Returns:
            {"total": wallet balance excluding unrealized PnL, "available": free margin}
        """
        pass

    @abstractmethod
    async def get_positions(self) -> List[Position]:
        """Get all open positions (one per symbol and side)."""
        pass

    # ========================================
    # ORDER METHODS
    # ========================================

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderRecord:
        """
        Place an order.

        Returns:
            The order as accepted by the venue, with a canonical status.

        Raises:
            TradingError subclasses when the venue rejects or cannot be reached.
        """
        pass

    @abstractmethod
    async def get_order(self, order_id: str, symbol: Optional[str] = None) -> Optional[OrderRecord]:
        """Get the current state of an order, or None if the venue does not know it."""
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> OrderRecord:
        """Cancel an order and return its resulting state."""
        pass

    # ========================================
    # MARKET DATA METHODS
    # ========================================

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Observation:
        """Latest price, 24h volume/change and funding rate for a symbol."""
        pass

    @abstractmethod
    async def get_funding_rate(self, symbol: str) -> float:
        """Current funding rate for a perpetual contract."""
        pass

    # ========================================
    # METADATA
    # ========================================

    def is_simulated(self) -> bool:
        """True for paper venues whose orders fill synchronously."""
        return False
