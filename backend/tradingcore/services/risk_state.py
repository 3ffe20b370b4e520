"""
Risk State Helpers

Pure functions for drawdown, margin usage, liquidation risk, risk level
classification, position admission and position sizing. No imports from
models/services/database. Easy to unit test in isolation.
"""

import math
from typing import Iterable, List, Optional

import numpy as np

from tradingcore.constants import (
    BALANCE_HISTORY_SIZE,
    DAILY_LOSS_LIMIT_EXCEEDED,
    HIGH_MARGIN_USAGE,
    MAX_DRAWDOWN_EXCEEDED,
)
from tradingcore.exceptions import RiskError, ValidationError
from tradingcore.schemas import (
    Position,
    PositionSizeProposal,
    RiskAlert,
    RiskAssessment,
    RiskLevel,
    RiskLimits,
    RiskState,
    Signal,
    SignalAction,
)

MAX_RISK_PER_TRADE = 0.02  # fraction of balance risked per trade
DEFAULT_STOP_DISTANCE = 0.02  # fraction of price when the signal has no stop
HIGH_MARGIN_ALERT_PCT = 80.0

# (fraction of daily loss limit, margin usage %) per level, most severe first
RISK_LEVEL_THRESHOLDS = (
    (RiskLevel.CRITICAL, 0.8, 80.0),
    (RiskLevel.HIGH, 0.6, 60.0),
    (RiskLevel.MEDIUM, 0.3, 40.0),
)


def update_balance_history(
    history: List[float],
    value: float,
    max_size: int = BALANCE_HISTORY_SIZE,
) -> List[float]:
    """Append a balance sample, evicting the oldest beyond max_size."""
    updated = list(history) + [value]
    return updated[-max_size:]


def calculate_max_drawdown(history: List[float]) -> float:
    """
    Largest peak-to-trough decline over the history, in percent of the peak.

    Returns 0 with fewer than 2 samples.
    """
    if len(history) < 2:
        return 0.0
    values = np.asarray(history, dtype=float)
    peaks = np.maximum.accumulate(values)
    valid = peaks > 0
    if not valid.any():
        return 0.0
    drawdowns = (peaks[valid] - values[valid]) / peaks[valid] * 100
    return max(0.0, float(drawdowns.max()))


def calculate_margin_usage(positions: Iterable[Position], total_balance: float) -> float:
    """Total margin used as a percentage of total balance (0 with no balance)."""
    if total_balance <= 0:
        return 0.0
    return sum(p.margin_used for p in positions) / total_balance * 100


def calculate_daily_loss_percent(daily_pnl: float, total_balance: float) -> float:
    """Today's realized loss as a percentage of balance. Profit counts as 0."""
    if total_balance <= 0:
        return 0.0
    return max(0.0, -daily_pnl) / total_balance * 100


def calculate_liquidation_risk(positions: Iterable[Position]) -> float:
    """
    Size-weighted proximity to liquidation, in percent.

    Only positions exposing a liquidation price and a positive mark price
    contribute. 100 means every weighted position sits at its liquidation price.
    """
    weighted_risk = 0.0
    total_value = 0.0
    for p in positions:
        if not p.liquidation_price or p.mark_price <= 0:
            continue
        distance = abs(p.mark_price - p.liquidation_price) / p.mark_price
        value = abs(p.size) * p.mark_price
        weighted_risk += (1 - distance) * value
        total_value += value
    if total_value <= 0:
        return 0.0
    return weighted_risk / total_value * 100


def determine_risk_level(
    daily_loss_percent: float,
    margin_usage: float,
    daily_loss_limit: float,
) -> RiskLevel:
    for level, loss_fraction, margin_threshold in RISK_LEVEL_THRESHOLDS:
        if daily_loss_percent > daily_loss_limit * loss_fraction or margin_usage > margin_threshold:
            return level
    return RiskLevel.LOW


def check_risk_limits(
    state: RiskState,
    limits: RiskLimits,
) -> List[RiskAlert]:
    """Informational alerts for limit breaches. Does not change trade permission."""
    alerts = []
    daily_loss = calculate_daily_loss_percent(state.daily_pnl, state.total_balance)
    if daily_loss > limits.daily_loss_limit:
        alerts.append(RiskAlert(
            type=DAILY_LOSS_LIMIT_EXCEEDED, data={"daily_loss": daily_loss}, risk_level=state.risk_level,
        ))
    if state.max_drawdown > limits.max_drawdown:
        alerts.append(RiskAlert(
            type=MAX_DRAWDOWN_EXCEEDED, data={"drawdown": state.max_drawdown}, risk_level=state.risk_level,
        ))
    if state.margin_usage > HIGH_MARGIN_ALERT_PCT:
        alerts.append(RiskAlert(
            type=HIGH_MARGIN_USAGE, data={"margin_usage": state.margin_usage}, risk_level=state.risk_level,
        ))
    return alerts


def _is_long(side: str) -> bool:
    normalized = str(getattr(side, "value", side)).upper()
    if normalized in ("LONG", "BUY"):
        return True
    if normalized in ("SHORT", "SELL"):
        return False
    raise ValidationError(f"Unknown side: {side}")


def assess_position(
    symbol: str,
    side: str,
    quantity: float,
    leverage: int,
    price: float,
    state: Optional[RiskState],
    limits: RiskLimits,
) -> RiskAssessment:
    """
    Admission check for a proposed position.

    Every failed check adds a reason; any reason blocks the trade. A stop
    risking 2% of balance is always suggested.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be positive")
    if price <= 0:
        raise ValidationError("price must be positive")
    if leverage < 1:
        raise ValidationError("leverage must be at least 1")
    is_long = _is_long(side)

    assessment = RiskAssessment(
        symbol=symbol,
        recommended_size=quantity,
        recommended_leverage=leverage,
        max_allowed_size=quantity,
    )

    if state is None or not state.is_trade_allowed:
        assessment.is_allowed = False
        assessment.risk_level = RiskLevel.CRITICAL
        assessment.reasons.append("Trading not allowed due to high risk level")
        return assessment

    assessment.risk_level = state.risk_level

    if leverage > limits.max_leverage:
        assessment.is_allowed = False
        assessment.reasons.append(f"Leverage {leverage}x exceeds maximum {limits.max_leverage}x")
        assessment.recommended_leverage = limits.max_leverage

    total_balance = state.total_balance
    if total_balance <= 0:
        assessment.is_allowed = False
        assessment.reasons.append("Position size exceeds maximum: no balance available")
        assessment.max_allowed_size = 0.0
        assessment.recommended_size = 0.0
        return assessment

    position_percent = quantity * price / total_balance * 100
    if position_percent > limits.max_position_size:
        assessment.is_allowed = False
        assessment.reasons.append(
            f"Position size {position_percent:.2f}% exceeds maximum {limits.max_position_size}%"
        )
        assessment.max_allowed_size = (total_balance * limits.max_position_size / 100) / price
        assessment.recommended_size = assessment.max_allowed_size

    stop_distance = (total_balance * MAX_RISK_PER_TRADE) / quantity
    assessment.stop_loss = price - stop_distance if is_long else price + stop_distance
    return assessment


def calculate_position_size(
    signal: Signal,
    current_price: float,
    state: Optional[RiskState],
    limits: RiskLimits,
    default_leverage: int,
) -> PositionSizeProposal:
    """
    Size a position for a signal.

    Risks 2% of balance scaled by confidence, capped by the max position
    size limit. Leverage scales linearly with confidence around 50.

    Raises:
        RiskError: no risk snapshot yet
        ValidationError: non-positive price or a signal without direction
    """
    if state is None:
        raise RiskError("Risk metrics not available")
    if current_price <= 0:
        raise ValidationError("current price must be positive")
    if signal.action not in (SignalAction.BUY, SignalAction.SELL):
        raise ValidationError(f"Cannot size a {signal.action.value} signal")

    confidence_multiplier = signal.confidence / 100
    total_balance = max(0.0, state.total_balance)

    size = (total_balance * MAX_RISK_PER_TRADE * confidence_multiplier) / current_price
    max_position_value = total_balance * (limits.max_position_size / 100)
    max_size = max_position_value / current_price
    size = min(size, max_size)

    # round first so 6.000000000000001 does not ceil to 7
    leverage = math.ceil(round(default_leverage * (1 + (signal.confidence - 50) / 100), 9))
    leverage = max(1, min(leverage, limits.max_leverage))

    if signal.stop_loss is not None:
        stop_distance = abs(current_price - signal.stop_loss)
    else:
        stop_distance = current_price * DEFAULT_STOP_DISTANCE

    if signal.action == SignalAction.BUY:
        stop_loss = current_price - stop_distance
    else:
        stop_loss = current_price + stop_distance

    return PositionSizeProposal(
        size=size,
        leverage=leverage,
        stop_loss=stop_loss,
        margin=(size * current_price) / leverage,
    )
