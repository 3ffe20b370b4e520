"""
Database Models - domain-organized package.

All model classes are re-exported here:
    from tradingcore.models import Order, Trade, RiskMetric, ...
"""

from tradingcore.database import Base  # noqa: F401 - re-exported for tests/conftest.py
from tradingcore.models.trading import Order, Trade
from tradingcore.models.risk import Notification, RiskMetric
from tradingcore.models.system import SystemConfig

__all__ = [
    "Base",
    "Order",
    "Trade",
    "Notification",
    "RiskMetric",
    "SystemConfig",
]
