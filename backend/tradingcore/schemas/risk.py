"""Risk limit, snapshot, assessment and sizing schemas"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from tradingcore.exceptions import ValidationError
from tradingcore.schemas.order import Position


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RiskLimits(BaseModel):
    daily_loss_limit: float = Field(default=5.0, ge=0, le=50)  # % of balance
    max_leverage: int = Field(default=10, ge=1, le=125)
    max_position_size: float = Field(default=30.0, ge=0, le=100)  # % of balance
    max_drawdown: float = Field(default=15.0, ge=0, le=50)  # %
    max_open_positions: int = Field(default=5, ge=1, le=100)
    concentration_limit: float = Field(default=40.0, ge=0, le=100)  # %
    liquidation_buffer: float = Field(default=20.0, ge=0, le=100)  # %

    @classmethod
    def from_settings(cls, app_settings) -> "RiskLimits":
        return cls(
            daily_loss_limit=app_settings.max_daily_loss_percent,
            max_leverage=app_settings.max_leverage,
            max_position_size=app_settings.max_position_percent,
            max_drawdown=app_settings.max_drawdown_percent,
            max_open_positions=app_settings.max_open_positions,
            concentration_limit=app_settings.concentration_limit_percent,
            liquidation_buffer=app_settings.liquidation_buffer_percent,
        )

    def apply_patch(self, patch: Dict[str, Any]) -> "RiskLimits":
        unknown = set(patch) - set(type(self).model_fields)
        if unknown:
            raise ValidationError(f"Unknown risk limits: {', '.join(sorted(unknown))}")
        try:
            return RiskLimits.model_validate({**self.model_dump(), **patch})
        except PydanticValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError("; ".join(messages))


class RiskState(BaseModel):
    """Authoritative risk snapshot, recomputed each risk cycle"""

    total_balance: float
    available_balance: float
    total_unrealized_pnl: float = 0.0
    daily_pnl: float = 0.0
    max_drawdown: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW
    is_trade_allowed: bool = True
    margin_usage: float = 0.0
    liquidation_risk: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class PositionSizeProposal(BaseModel):
    size: float
    leverage: int
    stop_loss: float
    margin: float


class RiskAssessment(BaseModel):
    symbol: str
    is_allowed: bool = True
    risk_level: RiskLevel = RiskLevel.LOW
    reasons: List[str] = Field(default_factory=list)
    recommended_size: float
    recommended_leverage: int
    max_allowed_size: float
    stop_loss: float = 0.0


class RiskAlert(BaseModel):
    type: str
    data: Dict[str, float] = Field(default_factory=dict)
    risk_level: Optional[RiskLevel] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class AccountSnapshot(BaseModel):
    """Balance and open positions as reported by the account collaborator"""

    total_balance: float
    available_balance: float
    positions: List[Position] = Field(default_factory=list)
