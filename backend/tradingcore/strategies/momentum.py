"""
Momentum signal source

Follows short-term price moves: a rise of more than 2% over the last
10 observations is a BUY, a fall of more than 2% is a SELL.
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

MIN_OBSERVATIONS = 20
LOOKBACK = 10
MOVE_THRESHOLD_PCT = 2.0
BASE_CONFIDENCE = 60.0
MAX_CONFIDENCE = 80.0


@SignalSourceRegistry.register
class MomentumSource(SignalSource):
    def get_definition(self) -> SourceDefinition:
        return SourceDefinition(
            id="momentum",
            name="Momentum Strategy",
            description="Trades in the direction of strong short-term price moves",
            default_weight=0.4,
            default_timeframes=["1m", "5m", "15m"],
            min_observations=MIN_OBSERVATIONS,
            parameters=[
                SourceParameter(
                    name="rsiPeriod", display_name="RSI Period",
                    description="RSI lookback period", type="int",
                    default=14, min_value=2, max_value=100,
                ),
                SourceParameter(
                    name="rsiOverbought", display_name="RSI Overbought",
                    description="RSI level considered overbought",
                    default=70, min_value=50, max_value=100,
                ),
                SourceParameter(
                    name="rsiOversold", display_name="RSI Oversold",
                    description="RSI level considered oversold",
                    default=30, min_value=0, max_value=50,
                ),
                SourceParameter(
                    name="macdFast", display_name="MACD Fast",
                    description="MACD fast EMA period", type="int",
                    default=12, min_value=2, max_value=50,
                ),
                SourceParameter(
                    name="macdSlow", display_name="MACD Slow",
                    description="MACD slow EMA period", type="int",
                    default=26, min_value=5, max_value=100,
                ),
                SourceParameter(
                    name="macdSignal", display_name="MACD Signal",
                    description="MACD signal line period", type="int",
                    default=9, min_value=2, max_value=50,
                ),
                SourceParameter(
                    name="volumeThreshold", display_name="Volume Threshold",
                    description="Volume multiple required to confirm a move",
                    default=1.5, min_value=0, max_value=10,
                ),
            ],
        )

    async def analyze(self, symbol: str, window: List[Observation]) -> List[Signal]:
        if len(window) < MIN_OBSERVATIONS:
            return []

        latest = window[-1]
        reference = window[-LOOKBACK]
        price_change = (latest.price - reference.price) / reference.price * 100

        if price_change > MOVE_THRESHOLD_PCT:
            action = SignalAction.BUY
            reasoning = f"Strong upward momentum: {price_change:.2f}% price increase"
        elif price_change < -MOVE_THRESHOLD_PCT:
            action = SignalAction.SELL
            reasoning = f"Strong downward momentum: {price_change:.2f}% price decrease"
        else:
            return []

        return [
            Signal(
                symbol=symbol,
                action=action,
                confidence=min(MAX_CONFIDENCE, BASE_CONFIDENCE + abs(price_change)),
                strategy="momentum",
                reasoning=reasoning,
            )
        ]
