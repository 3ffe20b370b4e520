"""
Risk Router

Risk snapshot, limits, admission checks and position sizing.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, Field

from tradingcore.exceptions import RiskError
from tradingcore.routers.dependencies import get_trading_system
from tradingcore.schemas import (
    Position,
    PositionSide,
    PositionSizeProposal,
    RiskAlert,
    RiskAssessment,
    RiskLimits,
    RiskState,
    Signal,
)
from tradingcore.services.trading_system import TradingSystem

router = APIRouter(prefix="/api/risk", tags=["risk"])


class ValidatePositionRequest(BaseModel):
    symbol: str
    side: PositionSide
    quantity: float
    leverage: int
    price: float


class PositionSizeRequest(BaseModel):
    signal: Signal
    current_price: float = Field(gt=0)


@router.get("/metrics", response_model=RiskState)
async def get_metrics(system: TradingSystem = Depends(get_trading_system)):
    state = system.risk.get_metrics()
    if state is None:
        raise RiskError("Risk metrics not available")
    return state


@router.get("/positions", response_model=List[Position])
async def get_risk_positions(system: TradingSystem = Depends(get_trading_system)):
    """Positions as of the last risk snapshot"""
    return system.risk.get_positions()


@router.get("/alerts", response_model=List[RiskAlert])
async def get_alerts(system: TradingSystem = Depends(get_trading_system)):
    return system.risk.get_last_alerts()


@router.get("/limits", response_model=RiskLimits)
async def get_limits(system: TradingSystem = Depends(get_trading_system)):
    return system.risk.get_limits()


@router.patch("/limits", response_model=RiskLimits)
async def update_limits(patch: Dict[str, Any] = Body(...), system: TradingSystem = Depends(get_trading_system)):
    return await system.risk.update_limits(patch)


@router.post("/validate-position", response_model=RiskAssessment)
async def validate_position(request: ValidatePositionRequest, system: TradingSystem = Depends(get_trading_system)):
    return system.risk.validate_position(
        request.symbol, request.side, request.quantity, request.leverage, request.price
    )


@router.post("/position-size", response_model=PositionSizeProposal)
async def calculate_position_size(request: PositionSizeRequest, system: TradingSystem = Depends(get_trading_system)):
    return system.risk.calculate_position_size(request.signal, request.current_price)
