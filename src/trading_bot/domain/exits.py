"""
Domain Rules: Exit state machine.

Pure functions that decide how an open position progresses through its
take-profit ladder. No I/O, no hidden state: the caller tracks the current
PositionState, executes the returned actions and persists the next state.

Invalid input never raises. It degrades to a CLOSED / CLOSE_ALL decision so
the caller always fails safe.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from trading_bot.config.settings import ExitSettings
from trading_bot.domain.models import (
    ExitAction,
    ExitActionDetail,
    ExitDecisionContext,
    ExitDecisionResult,
    ExitIndicators,
    Position,
    PositionSide,
    PositionState,
)
from trading_bot.observability.logging import get_logger

logger = get_logger(__name__)

# =============================================================================
# Closure Reasons
# =============================================================================
CLOSURE_SL_HIT = "SL_HIT"
CLOSURE_TP1_HIT = "TP1_HIT"
CLOSURE_TP2_HIT = "TP2_HIT"
CLOSURE_TP3_HIT = "TP3_HIT"

_DEFAULT_SETTINGS = ExitSettings()
_HUNDRED = Decimal("100")


# =============================================================================
# Helpers
# =============================================================================


def _as_decimal(value: object) -> Decimal | None:
    """Coerce a numeric input to Decimal; None when missing or not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


def _fmt(value: Decimal) -> str:
    return f"{value:.8f}"


def _close_all(
    reason: str,
    state_transition: str,
    metadata: dict | None = None,
) -> ExitDecisionResult:
    return ExitDecisionResult(
        state=PositionState.CLOSED,
        actions=(ExitActionDetail(action=ExitAction.CLOSE_ALL),),
        reason=reason,
        state_transition=state_transition,
        metadata=metadata,
    )


def validate_exit_inputs(context: ExitDecisionContext) -> str | None:
    """Return a validation message, or None when the context is usable."""
    position = context.position
    if position is None:
        return "Position is required"

    if context.current_price is None:
        return "Current price is required"
    price = _as_decimal(context.current_price)
    if price is None or not price.is_finite() or price <= 0:
        return f"Invalid current price: {context.current_price}"

    if not context.current_state:
        return "Current state is required"

    if not isinstance(position.take_profits, (list, tuple)):
        return "Position must have take_profits list"

    return None


def _normalize_state(value: PositionState | str) -> PositionState | None:
    if isinstance(value, PositionState):
        return value
    try:
        return PositionState(str(value))
    except ValueError:
        return None


def calculate_profit_percent(side: PositionSide, entry_price: Decimal, current_price: Decimal) -> Decimal:
    """PnL in percent of entry price, signed by position side."""
    if entry_price == 0:
        return Decimal("0")
    if side == PositionSide.LONG:
        return (current_price - entry_price) / entry_price * _HUNDRED
    return (entry_price - current_price) / entry_price * _HUNDRED


def calculate_profit_absolute(position: Position, current_price: Decimal) -> Decimal:
    """Unleveraged PnL in quote currency for the full position quantity."""
    return (current_price - position.entry_price) * position.quantity * position.side.sign


def check_stop_loss_hit(position: Position, current_price: Decimal) -> bool:
    """Price touching the stop-loss counts as a hit."""
    sl_price = position.stop_loss.price if position.stop_loss is not None else position.entry_price
    if position.side == PositionSide.LONG:
        return current_price <= sl_price
    return current_price >= sl_price


def check_take_profit_hit(position: Position, current_price: Decimal, index: int) -> bool:
    """Missing levels and zero prices are never hit."""
    if index < 0 or index >= len(position.take_profits):
        return False
    tp_price = _as_decimal(position.take_profits[index].price)
    if not tp_price:
        return False
    if position.side == PositionSide.LONG:
        return current_price >= tp_price
    return current_price <= tp_price


def calculate_breakeven_price(position: Position, margin_pct: Decimal) -> Decimal:
    """Entry price nudged into profit by `margin_pct` percent."""
    margin = position.entry_price * margin_pct / _HUNDRED
    if position.side == PositionSide.LONG:
        return position.entry_price + margin
    return position.entry_price - margin


def calculate_trailing_distance(
    current_price: Decimal,
    config: ExitSettings | None = None,
    indicators: ExitIndicators | None = None,
) -> Decimal:
    """
    Trailing stop distance in price units.

    With ATR% available the distance follows volatility (clamped to the
    configured band) and tightens when volume runs hot; otherwise the fixed
    trailing percentage applies.
    """
    cfg = config or _DEFAULT_SETTINGS
    effective_pct = cfg.trailing_distance_pct

    atr_pct = _as_decimal(indicators.atr_percent) if indicators else None
    if atr_pct is not None and atr_pct.is_finite() and atr_pct > 0:
        effective_pct = max(cfg.smart_trailing_min_atr_pct, min(atr_pct, cfg.smart_trailing_max_atr_pct))
        if _is_high_volume(indicators, cfg):
            effective_pct = effective_pct * cfg.high_volume_tighten_factor

    effective_pct = max(effective_pct, cfg.min_sl_distance_pct)
    return current_price * effective_pct / _HUNDRED


def _is_high_volume(indicators: ExitIndicators | None, cfg: ExitSettings) -> bool:
    if indicators is None:
        return False
    current = _as_decimal(indicators.current_volume)
    average = _as_decimal(indicators.avg_volume)
    if not current or not average or average <= 0:
        return False
    return current / average > cfg.high_volume_ratio


def _tp3_hit(
    position: Position,
    current_price: Decimal,
    cfg: ExitSettings,
    indicators: ExitIndicators | None,
) -> bool:
    if not cfg.adaptive_tp3 or len(position.take_profits) < 3:
        return check_take_profit_hit(position, current_price, 2)

    # Adaptive: the configured TP3 distance is clamped into a profit band,
    # with a bonus when volume confirms the move.
    target_pct = _as_decimal(position.take_profits[2].percent) or Decimal("0")
    target_pct = max(cfg.adaptive_tp3_min_profit_pct, min(target_pct, cfg.adaptive_tp3_max_profit_pct))
    if _is_high_volume(indicators, cfg):
        target_pct += cfg.adaptive_tp3_high_volume_bonus_pct
    return calculate_profit_percent(position.side, position.entry_price, current_price) >= target_pct


def _tp_metadata(closure_reason: str, position: Position, current_price: Decimal) -> dict:
    return {
        "closure_reason": closure_reason,
        "profit_percent": calculate_profit_percent(position.side, position.entry_price, current_price),
        "profit_absolute": calculate_profit_absolute(position, current_price),
        "trigger_price": current_price,
    }


# =============================================================================
# State Machine
# =============================================================================


def evaluate_exit(context: ExitDecisionContext) -> ExitDecisionResult:
    """
    Decide the next exit state and the actions to execute.

    Priority: input validation, stop-loss (any non-terminal state),
    state validity, then take-profit progression gated by current state.
    """
    try:
        return _evaluate_exit(context)
    except (ArithmeticError, AttributeError, TypeError, ValueError) as e:
        # Corrupt numeric fields (NaN entry, missing SL price) must still fail safe
        logger.warning(f"Exit evaluation failed, forcing close: {e!r}")
        message = f"Exit evaluation failed: {e}"
        return _close_all(message, f"ERROR → CLOSED ({message})")


def _evaluate_exit(context: ExitDecisionContext) -> ExitDecisionResult:
    validation_error = validate_exit_inputs(context)
    if validation_error:
        return _close_all(validation_error, f"ERROR → CLOSED ({validation_error})")

    position = context.position
    current_price = _as_decimal(context.current_price)
    raw_state = context.current_state
    state = _normalize_state(raw_state)
    state_label = state.value if state else str(raw_state)
    cfg = context.config or _DEFAULT_SETTINGS

    if state == PositionState.CLOSED:
        return ExitDecisionResult(
            state=PositionState.CLOSED,
            actions=(),
            reason="Position already closed",
            state_transition="CLOSED → NO_CHANGE",
        )

    # STEP 1: stop-loss always wins over TP progression
    if check_stop_loss_hit(position, current_price):
        return _close_all(
            f"Stop Loss triggered at {_fmt(current_price)}",
            f"{state_label} → CLOSED (SL HIT)",
            metadata=_tp_metadata(CLOSURE_SL_HIT, position, current_price),
        )

    # STEP 2: unknown states fail safe
    if state is None:
        return _close_all(f"Invalid current state: {raw_state}", "INVALID → CLOSED")

    # STEP 3: take-profit ladder
    if state == PositionState.OPEN:
        if check_take_profit_hit(position, current_price, 0):
            new_sl = calculate_breakeven_price(position, cfg.breakeven_margin_pct)
            return ExitDecisionResult(
                state=PositionState.TP1_HIT,
                actions=(
                    ExitActionDetail(action=ExitAction.CLOSE_PERCENT, percent=cfg.tp1_close_pct),
                    ExitActionDetail(action=ExitAction.UPDATE_SL, new_stop_loss=new_sl),
                ),
                reason=f"TP1 hit at {_fmt(current_price)} - moving SL to breakeven ({_fmt(new_sl)})",
                state_transition="OPEN → TP1_HIT",
                metadata=_tp_metadata(CLOSURE_TP1_HIT, position, current_price),
            )

    elif state == PositionState.TP1_HIT:
        if check_take_profit_hit(position, current_price, 1):
            distance = calculate_trailing_distance(current_price, cfg, context.indicators)
            return ExitDecisionResult(
                state=PositionState.TP2_HIT,
                actions=(
                    ExitActionDetail(action=ExitAction.CLOSE_PERCENT, percent=cfg.tp2_close_pct),
                    ExitActionDetail(action=ExitAction.ACTIVATE_TRAILING, trailing_distance=distance),
                ),
                reason=f"TP2 hit at {_fmt(current_price)} - activating trailing stop (distance: {_fmt(distance)})",
                state_transition="TP1_HIT → TP2_HIT",
                metadata=_tp_metadata(CLOSURE_TP2_HIT, position, current_price),
            )

    elif state == PositionState.TP2_HIT:
        if _tp3_hit(position, current_price, cfg, context.indicators):
            return ExitDecisionResult(
                state=PositionState.TP3_HIT,
                actions=(ExitActionDetail(action=ExitAction.CLOSE_PERCENT, percent=cfg.tp3_close_pct),),
                reason=f"TP3 hit at {_fmt(current_price)} - closing remaining position",
                state_transition="TP2_HIT → TP3_HIT",
                metadata=_tp_metadata(CLOSURE_TP3_HIT, position, current_price),
            )

    elif state == PositionState.TP3_HIT:
        return ExitDecisionResult(
            state=PositionState.TP3_HIT,
            actions=(),
            reason="All TPs hit - awaiting SL or manual close",
            state_transition="TP3_HIT → HOLDING",
        )

    # STEP 4: nothing to do
    return ExitDecisionResult(
        state=state,
        actions=(),
        reason="No exit conditions met - holding position",
        state_transition=f"{state.value} → NO_CHANGE",
    )
