"""Trading models: orders and trades."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Integer, String

from tradingcore.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)  # sim_... or exchange-assigned id
    symbol = Column(String, nullable=False, index=True)
    side = Column(String, nullable=False)  # BUY / SELL
    type = Column(String, nullable=False)  # MARKET, LIMIT, STOP, ...
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=True)
    stop_price = Column(Float, nullable=True)
    time_in_force = Column(String, default="GTC")
    status = Column(String, nullable=False, index=True)  # NEW, PARTIALLY_FILLED, FILLED, CANCELED, REJECTED, EXPIRED
    executed_qty = Column(Float, default=0.0)
    average_price = Column(Float, nullable=True)
    leverage = Column(Integer, default=1)
    fee = Column(Float, default=0.0)
    external_order_id = Column(String, nullable=True)  # Exchange order id in LIVE mode
    mode = Column(String, default="SIM")  # SIM or LIVE
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    symbol = Column(String, nullable=False, index=True)
    side = Column(String, nullable=False)
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    fee = Column(Float, default=0.0)
    realized_pnl = Column(Float, nullable=True)
    strategy_id = Column(String, nullable=True)
    mode = Column(String, default="SIM")
    order_id = Column(String, nullable=True, index=True)
