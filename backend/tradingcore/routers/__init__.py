"""
API Routers

Thin FastAPI routers over the trading system services. Each router reaches
the services through the get_trading_system dependency.
"""

from tradingcore.routers import (
    execution_router,
    orders_router,
    positions_router,
    risk_router,
    strategies_router,
    system_router,
)

__all__ = [
    "execution_router",
    "orders_router",
    "positions_router",
    "risk_router",
    "strategies_router",
    "system_router",
]
