"""
Exchange Client Abstraction Layer

Execution venues implement the ExchangeClient abstract base class:
- SimulatedExchangeClient: paper fills against real market prices
- BybitFuturesClient: ByBit V5 USDT linear perpetuals (via ByBitClient)
"""

from tradingcore.exchange_clients.base import ExchangeClient

__all__ = ["ExchangeClient"]
