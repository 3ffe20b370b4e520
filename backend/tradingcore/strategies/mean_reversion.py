"""
Mean reversion signal source

Fades stretched prices: more than 3% above the rolling average is a SELL,
more than 3% below is a BUY. The averaging window is the bbPeriod
parameter (20 by default).
"""

import logging
from typing import List

import numpy as np

from tradingcore.schemas import Observation, Signal, SignalAction
from tradingcore.strategies import (
    SignalSource,
    SignalSourceRegistry,
    SourceDefinition,
    SourceParameter,
)

logger = logging.getLogger(__name__)

MIN_OBSERVATIONS = 20
DEVIATION_THRESHOLD_PCT = 3.0
BASE_CONFIDENCE = 50.0
MAX_CONFIDENCE = 75.0


@SignalSourceRegistry.register
class MeanReversionSource(SignalSource):
    def get_definition(self) -> SourceDefinition:
        return SourceDefinition(
            id="mean-reversion",
            name="Mean Reversion Strategy",
            description="Fades prices that have stretched away from their moving average",
            default_weight=0.3,
            default_timeframes=["5m", "15m", "1h"],
            min_observations=MIN_OBSERVATIONS,
            parameters=[
                SourceParameter(
                    name="bbPeriod", display_name="Average Period",
                    description="Number of observations in the moving average", type="int",
                    default=20, min_value=2, max_value=100,
                ),
                SourceParameter(
                    name="bbStdDev", display_name="Band Width",
                    description="Bollinger band standard deviations",
                    default=2, min_value=0.5, max_value=5,
                ),
                SourceParameter(
                    name="rsiPeriod", display_name="RSI Period",
                    description="RSI lookback period", type="int",
                    default=14, min_value=2, max_value=100,
                ),
                SourceParameter(
                    name="rsiExtreme", display_name="RSI Extreme",
                    description="RSI level considered extreme",
                    default=80, min_value=50, max_value=100,
                ),
                SourceParameter(
                    name="volumeConfirmation", display_name="Volume Confirmation",
                    description="Require volume confirmation (1 = on, 0 = off)", type="bool",
                    default=1, min_value=0, max_value=1,
                ),
            ],
        )

    async def analyze(self, symbol: str, window: List[Observation]) -> List[Signal]:
        if len(window) < MIN_OBSERVATIONS:
            return []

        period = max(2, int(self.param("bbPeriod")))
        prices = np.array([o.price for o in window[-period:]], dtype=float)
        average = float(prices.mean())
        latest = window[-1]
        deviation = (latest.price - average) / average * 100

        if deviation > DEVIATION_THRESHOLD_PCT:
            action = SignalAction.SELL
            reasoning = f"Price {deviation:.2f}% above {len(prices)}-period average - reversion expected"
        elif deviation < -DEVIATION_THRESHOLD_PCT:
            action = SignalAction.BUY
            reasoning = f"Price {abs(deviation):.2f}% below {len(prices)}-period average - reversion expected"
        else:
            return []

        return [
            Signal(
                symbol=symbol,
                action=action,
                confidence=min(MAX_CONFIDENCE, BASE_CONFIDENCE + abs(deviation) * 2),
                strategy="mean-reversion",
                reasoning=reasoning,
            )
        ]
