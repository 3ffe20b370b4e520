"""Signal, source configuration and aggregated decision schemas"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from tradingcore.exceptions import ValidationError


class SignalAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    CLOSE = "CLOSE"
    HOLD = "HOLD"


class Signal(BaseModel):
    symbol: str
    action: SignalAction
    confidence: float = Field(ge=0, le=100)
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    strategy: str
    reasoning: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True


class SourceConfig(BaseModel):
    """Runtime configuration of one signal source.

    Weights are not normalized across sources.
    """

    id: str
    enabled: bool = True
    weight: float = Field(ge=0, le=1)
    symbols: List[str] = Field(min_length=1)
    timeframes: List[str] = Field(min_length=1)
    parameters: Dict[str, float] = Field(default_factory=dict)

    def applies_to(self, symbol: str) -> bool:
        return symbol in self.symbols

    def apply_patch(self, patch: Dict[str, Any]) -> "SourceConfig":
        """Return a new config with the patch merged in, validating every field.

        ``parameters`` is merged key by key; every other field is replaced.
        Raises ValidationError on unknown fields or out-of-range values.
        """
        unknown = set(patch) - {"enabled", "weight", "symbols", "timeframes", "parameters"}
        if unknown:
            raise ValidationError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        merged = self.model_dump()
        for key, value in patch.items():
            if key == "parameters":
                if not isinstance(value, dict):
                    raise ValidationError("parameters must be an object of numeric values")
                merged["parameters"] = {**merged["parameters"], **value}
            else:
                merged[key] = value

        try:
            return SourceConfig.model_validate(merged)
        except PydanticValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError("; ".join(messages))


class AggregatedDecision(BaseModel):
    symbol: str
    signals: List[Signal] = Field(default_factory=list)
    resolved: Optional[Signal] = None  # None = no actionable consensus this cycle
    confidence: float = 0.0
    scores: Dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_actionable(self) -> bool:
        return self.resolved is not None
