"""
Positions Router

Open positions (simulated replay or exchange mirror) and closing them.
"""

from typing import List

from fastapi import APIRouter, Depends

from tradingcore.routers.dependencies import get_trading_system
from tradingcore.schemas import Position
from tradingcore.services.trading_system import TradingSystem

router = APIRouter(prefix="/api/positions", tags=["positions"])


@router.get("", response_model=List[Position])
async def list_positions(system: TradingSystem = Depends(get_trading_system)):
    return await system.execution.get_positions()


@router.post("/close-all")
async def close_all_positions(system: TradingSystem = Depends(get_trading_system)):
    success = await system.execution.close_all_positions()
    return {"success": success}


@router.post("/{symbol}/close")
async def close_position(symbol: str, system: TradingSystem = Depends(get_trading_system)):
    success = await system.execution.close_position(symbol.upper())
    return {"symbol": symbol.upper(), "success": success}
