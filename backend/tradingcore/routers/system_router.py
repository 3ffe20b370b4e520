"""
System Router

Health, command broadcast and the emergency stop.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tradingcore.routers.dependencies import get_trading_system
from tradingcore.services.trading_system import TradingSystem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["system"])


class CommandRequest(BaseModel):
    command: str
    payload: Dict[str, Any] = Field(default_factory=dict)


@router.get("/health")
async def health(system: TradingSystem = Depends(get_trading_system)):
    return system.health()


@router.post("/command")
async def broadcast_command(request: CommandRequest, system: TradingSystem = Depends(get_trading_system)):
    """Send START_TRADING, STOP_TRADING, PAUSE_TRADING, CONFIG_UPDATE or EMERGENCY_STOP to every service."""
    await system.broadcast_command(request.command.upper(), request.payload)
    return {"command": request.command.upper(), "status": "sent"}


@router.post("/emergency-stop")
async def emergency_stop(system: TradingSystem = Depends(get_trading_system)):
    logger.critical("🚨 Emergency stop requested via API")
    return await system.emergency_stop()
