"""
Signal Source Framework

This module provides the base class and a registry for signal sources.
Each source turns a window of market observations into zero or more
directional signals with a confidence score.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from tradingcore.schemas import Observation, Signal, SourceConfig


class SourceParameter(BaseModel):
    """Definition of a signal source parameter"""

    name: str
    display_name: str
    description: str
    type: str = "float"  # "float", "int", "bool"
    default: float
    min_value: Optional[float] = None
    max_value: Optional[float] = None


class SourceDefinition(BaseModel):
    """Metadata about a signal source"""

    id: str  # Unique identifier (e.g., "momentum")
    name: str  # Display name (e.g., "Momentum Strategy")
    description: str
    parameters: List[SourceParameter]
    default_weight: float = Field(ge=0, le=1)
    default_timeframes: List[str]
    min_observations: int = 1


class SignalSource(ABC):
    """
    Base class for all signal sources.

    Each source must implement:
    - get_definition(): Return source metadata and default parameters
    - analyze(): Turn an observation window into signals
    """

    def __init__(self, config: Optional[SourceConfig] = None):
        self.config = config
        self.validate_config()

    @abstractmethod
    def get_definition(self) -> SourceDefinition:
        """Return source metadata and parameter definitions"""
        pass

    def validate_config(self):
        """Check configured parameters against the definition's bounds"""
        if self.config is None:
            return
        for param in self.get_definition().parameters:
            value = self.config.parameters.get(param.name)
            if value is None:
                continue
            if param.min_value is not None and value < param.min_value:
                raise ValueError(f"{param.name} must be >= {param.min_value}")
            if param.max_value is not None and value > param.max_value:
                raise ValueError(f"{param.name} must be <= {param.max_value}")

    def param(self, name: str) -> float:
        """Configured parameter value, falling back to the definition default"""
        if self.config is not None and name in self.config.parameters:
            return self.config.parameters[name]
        for p in self.get_definition().parameters:
            if p.name == name:
                return p.default
        raise KeyError(name)

    def default_config(self, symbols: List[str]) -> SourceConfig:
        definition = self.get_definition()
        return SourceConfig(
            id=definition.id,
            enabled=True,
            weight=definition.default_weight,
            symbols=list(symbols),
            timeframes=list(definition.default_timeframes),
            parameters={p.name: p.default for p in definition.parameters},
        )

    @abstractmethod
    async def analyze(self, symbol: str, window: List[Observation]) -> List[Signal]:
        """
        Analyze an observation window for one symbol

        Args:
            symbol: Instrument being evaluated
            window: Observations ordered oldest first

        Returns:
            Zero or more signals for the symbol
        """
        pass


class SignalSourceRegistry:
    """Registry of all available signal sources"""

    _sources: Dict[str, type] = {}

    @classmethod
    def register(cls, source_class: type):
        """Register a signal source class"""
        definition = source_class().get_definition()
        cls._sources[definition.id] = source_class
        return source_class

    @classmethod
    def get_source(cls, source_id: str, config: Optional[SourceConfig] = None) -> SignalSource:
        """Get an instance of a source by ID"""
        if source_id not in cls._sources:
            raise ValueError(f"Unknown signal source: {source_id}")
        return cls._sources[source_id](config)

    @classmethod
    def list_sources(cls) -> List[SourceDefinition]:
        return [source_class().get_definition() for source_class in cls._sources.values()]

    @classmethod
    def get_definition(cls, source_id: str) -> SourceDefinition:
        if source_id not in cls._sources:
            raise ValueError(f"Unknown signal source: {source_id}")
        return cls._sources[source_id]().get_definition()

    @classmethod
    def default_configs(cls, symbols: List[str]) -> Dict[str, SourceConfig]:
        """Default config for every registered source, keyed by source id"""
        return {
            source_id: source_class().default_config(symbols)
            for source_id, source_class in cls._sources.items()
        }

    @classmethod
    def source_ids(cls) -> List[str]:
        return list(cls._sources)


# Import all source implementations to trigger registration
# Must be after SignalSourceRegistry class definition for decorators to work
from tradingcore.strategies import (  # noqa: E402
    funding_arbitrage,
    mean_reversion,
    momentum,
)

__all__ = [
    "SignalSource",
    "SourceDefinition",
    "SourceParameter",
    "SignalSourceRegistry",
    "funding_arbitrage",
    "mean_reversion",
    "momentum",
]
