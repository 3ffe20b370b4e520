"""Shared router dependencies"""

from tradingcore.services.trading_system import TradingSystem


def get_trading_system() -> TradingSystem:
    """Get the running trading system - overridden in main.py"""
    raise NotImplementedError("Must override trading system dependency")
