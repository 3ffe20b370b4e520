from tradingcore.schemas.market import Observation
from tradingcore.schemas.order import (
    TERMINAL_ORDER_STATUSES,
    OrderRecord,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    TrackingStatus,
)
from tradingcore.schemas.risk import (
    AccountSnapshot,
    PositionSizeProposal,
    RiskAlert,
    RiskAssessment,
    RiskLevel,
    RiskLimits,
    RiskState,
)
from tradingcore.schemas.signal import AggregatedDecision, Signal, SignalAction, SourceConfig

__all__ = [
    "Observation",
    "TERMINAL_ORDER_STATUSES",
    "OrderRecord",
    "OrderRequest",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Position",
    "PositionSide",
    "TrackingStatus",
    "AccountSnapshot",
    "PositionSizeProposal",
    "RiskAlert",
    "RiskAssessment",
    "RiskLevel",
    "RiskLimits",
    "RiskState",
    "AggregatedDecision",
    "Signal",
    "SignalAction",
    "SourceConfig",
]
