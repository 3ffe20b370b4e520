"""Risk models: periodic risk snapshots and operator notifications."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from tradingcore.database import Base


class RiskMetric(Base):
    __tablename__ = "risk_metrics"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    total_balance = Column(Float, nullable=False)
    available_balance = Column(Float, nullable=False)
    total_unrealized_pnl = Column(Float, default=0.0)
    daily_pnl = Column(Float, default=0.0)
    max_drawdown = Column(Float, default=0.0)
    risk_level = Column(String, nullable=False)  # LOW, MEDIUM, HIGH, CRITICAL
    is_trade_allowed = Column(Boolean, default=True)
    margin_usage = Column(Float, default=0.0)
    liquidation_risk = Column(Float, default=0.0)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String, nullable=False)  # risk, trade, error
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String, default="MEDIUM")
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
