"""
Funding arbitrage signal source

Takes the side that collects perpetual funding: a funding rate above
fundingThreshold is a SELL, one below -fundingThreshold/2 is a BUY.

hedgeRatio is carried in the config but not applied here.
"""

import logging
from typing import List

from tradingcore.schemas import Observation, Signal, SignalAction
from tradingcore.strategies import (
    SignalSource,
    SignalSourceRegistry,
    SourceDefinition,
    SourceParameter,
)

logger = logging.getLogger(__name__)

FIXED_CONFIDENCE = 70.0


@SignalSourceRegistry.register
class FundingArbitrageSource(SignalSource):
    def get_definition(self) -> SourceDefinition:
        return SourceDefinition(
            id="funding-arbitrage",
            name="Funding Arbitrage Strategy",
            description="Positions against extreme funding rates to collect funding payments",
            default_weight=0.3,
            default_timeframes=["8h"],
            min_observations=1,
            parameters=[
                SourceParameter(
                    name="fundingThreshold", display_name="Funding Threshold",
                    description="Funding rate above which shorts collect funding",
                    default=0.01, min_value=0, max_value=1,
                ),
                SourceParameter(
                    name="maxHoldingTime", display_name="Max Holding Time (ms)",
                    description="Longest time a funding position is held", type="int",
                    default=8 * 60 * 60 * 1000, min_value=0,
                ),
                SourceParameter(
                    name="hedgeRatio", display_name="Hedge Ratio",
                    description="Fraction of exposure to hedge",
                    default=0.95, min_value=0, max_value=1,
                ),
            ],
        )

    async def analyze(self, symbol: str, window: List[Observation]) -> List[Signal]:
        if not window:
            return []

        latest = window[-1]
        threshold = self.param("fundingThreshold")
        rate = latest.funding_rate

        if rate > threshold:
            action = SignalAction.SELL
            reasoning = f"High positive funding rate: {rate * 100:.3f}% - short to collect funding"
        elif rate < -threshold / 2:
            action = SignalAction.BUY
            reasoning = f"High negative funding rate: {rate * 100:.3f}% - long to collect funding"
        else:
            return []

        return [
            Signal(
                symbol=symbol,
                action=action,
                confidence=FIXED_CONFIDENCE,
                strategy="funding-arbitrage",
                reasoning=reasoning,
            )
        ]
