"""
Signal aggregation

Merges the signals produced in one cycle for one symbol into a single
weighted decision:

    score(action)   = sum(confidence x source weight) over that action's signals
    max_possible    = sum(weight x 100) over enabled sources configured for the symbol
    confidence      = min(100, best score / max_possible x 100)

A resolved signal is only emitted when confidence > 50 and the best action
is not HOLD. Weights are used as configured, without normalization.
"""

from datetime import datetime
from typing import Dict, List, Optional

from tradingcore.constants import MISSING_WEIGHT_FALLBACK, RESOLVE_CONFIDENCE_THRESHOLD
from tradingcore.schemas import AggregatedDecision, Signal, SignalAction, SourceConfig

AGGREGATED_SOURCE_ID = "aggregated"


def source_weight(source_id: str, configs: Dict[str, SourceConfig]) -> float:
    config = configs.get(source_id)
    if config is None:
        return MISSING_WEIGHT_FALLBACK
    return config.weight


def max_possible_score(symbol: str, configs: Dict[str, SourceConfig]) -> float:
    """Score if every enabled source configured for the symbol fired at 100"""
    return sum(c.weight * 100 for c in configs.values() if c.enabled and c.applies_to(symbol))


def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def aggregate_signals(
    symbol: str,
    signals: List[Signal],
    configs: Dict[str, SourceConfig],
) -> AggregatedDecision:
    if not signals:
        return AggregatedDecision(symbol=symbol, signals=[], resolved=None, confidence=0.0)

    # dicts keep insertion order, so the first action seen wins a tie
    scores: Dict[SignalAction, float] = {}
    groups: Dict[SignalAction, List[Signal]] = {}
    for signal in signals:
        weight = source_weight(signal.strategy, configs)
        scores[signal.action] = scores.get(signal.action, 0.0) + signal.confidence * weight
        groups.setdefault(signal.action, []).append(signal)

    best_action = None
    best_score = float("-inf")
    for action, score in scores.items():
        if score > best_score:
            best_action, best_score = action, score

    max_possible = max_possible_score(symbol, configs)
    confidence = min(100.0, best_score / max_possible * 100) if max_possible > 0 else 0.0

    resolved = None
    if confidence > RESOLVE_CONFIDENCE_THRESHOLD and best_action != SignalAction.HOLD:
        contributing = groups[best_action]
        resolved = Signal(
            symbol=symbol,
            action=best_action,
            confidence=confidence,
            target_price=_mean([s.target_price for s in contributing if s.target_price is not None]),
            stop_loss=_mean([s.stop_loss for s in contributing if s.stop_loss is not None]),
            strategy=AGGREGATED_SOURCE_ID,
            reasoning=(
                f"Aggregated from {len(contributing)} strategies: "
                f"{', '.join(s.strategy for s in contributing)}"
            ),
            timestamp=datetime.utcnow(),
        )

    return AggregatedDecision(
        symbol=symbol,
        signals=list(signals),
        resolved=resolved,
        confidence=confidence,
        scores={action.value: score for action, score in scores.items()},
    )
