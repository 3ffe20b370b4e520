"""System models: persisted key/value configuration."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from tradingcore.database import Base


class SystemConfig(Base):
    __tablename__ = "system_config"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, unique=True, index=True, nullable=False)
    value = Column(Text)  # JSON-encoded
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
