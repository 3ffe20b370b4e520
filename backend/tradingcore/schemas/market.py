"""Market observation schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Observation(BaseModel):
    """A single immutable market observation for one instrument"""

    symbol: str
    price: float = Field(gt=0)
    volume_24h: float = 0.0
    price_change_24h: float = 0.0  # percent
    funding_rate: float = 0.0
    mark_price: Optional[float] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True
