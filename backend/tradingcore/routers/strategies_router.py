"""
Strategies Router

Signal source definitions, their runtime configs, and the latest signals
and aggregated decisions per symbol.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from tradingcore.exceptions import NotFoundError
from tradingcore.routers.dependencies import get_trading_system
from tradingcore.schemas import AggregatedDecision, Signal, SourceConfig
from tradingcore.services.trading_system import TradingSystem
from tradingcore.strategies import SignalSourceRegistry, SourceParameter

router = APIRouter(prefix="/api/strategies", tags=["strategies"])


class StrategyResponse(BaseModel):
    id: str
    name: str
    description: str
    parameters: List[SourceParameter]
    min_observations: int
    config: SourceConfig


def _strategy_response(system: TradingSystem, source_id: str) -> StrategyResponse:
    try:
        definition = SignalSourceRegistry.get_definition(source_id)
    except ValueError:
        raise NotFoundError(f"Unknown strategy: {source_id}")
    return StrategyResponse(
        id=definition.id,
        name=definition.name,
        description=definition.description,
        parameters=definition.parameters,
        min_observations=definition.min_observations,
        config=system.strategy.get_config(source_id),
    )


@router.get("", response_model=List[StrategyResponse])
async def list_strategies(system: TradingSystem = Depends(get_trading_system)):
    """All registered signal sources with their parameter definitions and current config."""
    return [_strategy_response(system, source_id) for source_id in SignalSourceRegistry.source_ids()]


@router.get("/configs", response_model=Dict[str, SourceConfig])
async def get_configs(system: TradingSystem = Depends(get_trading_system)):
    return system.strategy.get_configs()


@router.get("/signals", response_model=Dict[str, List[Signal]])
async def get_signals(symbol: Optional[str] = None, system: TradingSystem = Depends(get_trading_system)):
    return system.strategy.get_current_signals(symbol)


@router.get("/decisions", response_model=Dict[str, AggregatedDecision])
async def get_decisions(system: TradingSystem = Depends(get_trading_system)):
    return system.strategy.get_decisions()


@router.get("/{source_id}", response_model=StrategyResponse)
async def get_strategy(source_id: str, system: TradingSystem = Depends(get_trading_system)):
    return _strategy_response(system, source_id)


@router.post("/{source_id}/enable", response_model=SourceConfig)
async def enable_strategy(source_id: str, system: TradingSystem = Depends(get_trading_system)):
    return await system.strategy.enable_source(source_id)


@router.post("/{source_id}/disable", response_model=SourceConfig)
async def disable_strategy(source_id: str, system: TradingSystem = Depends(get_trading_system)):
    return await system.strategy.disable_source(source_id)


@router.patch("/{source_id}/config", response_model=SourceConfig)
async def update_strategy_config(
    source_id: str,
    patch: Dict[str, Any] = Body(...),
    system: TradingSystem = Depends(get_trading_system),
):
    """
    Patch a source config. ``parameters`` is merged key by key; other fields
    (enabled, weight, symbols, timeframes) are replaced.
    """
    return await system.strategy.update_source_config(source_id, patch)
