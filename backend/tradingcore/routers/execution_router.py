"""
Execution Router

Execution settings, metrics, and the simulated balance reset.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from tradingcore.routers.dependencies import get_trading_system
from tradingcore.services.execution_service import ExecutionConfig
from tradingcore.services.trading_system import TradingSystem

router = APIRouter(prefix="/api/execution", tags=["execution"])


class ResetBalanceRequest(BaseModel):
    amount: Optional[float] = None


@router.get("/config", response_model=ExecutionConfig)
async def get_config(system: TradingSystem = Depends(get_trading_system)):
    return system.execution.config


@router.patch("/config", response_model=ExecutionConfig)
async def update_config(patch: Dict[str, Any] = Body(...), system: TradingSystem = Depends(get_trading_system)):
    return system.execution.update_config(patch)


@router.get("/metrics")
async def get_metrics(system: TradingSystem = Depends(get_trading_system)):
    return system.execution.metrics()


@router.post("/reset-balance")
async def reset_balance(
    request: Optional[ResetBalanceRequest] = None,
    system: TradingSystem = Depends(get_trading_system),
):
    """Reset the simulated ledger (SIM mode only)."""
    balance = await system.execution.reset_simulated_balance(request.amount if request else None)
    return {"balance": balance}
