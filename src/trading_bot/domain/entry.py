"""
Domain Rules: Entry gating.

Pure function deciding whether the current batch of candidate signals
justifies opening a position, and which signal to trade.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal, InvalidOperation

from trading_bot.config.settings import EntrySettings
from trading_bot.domain.models import (
    ConflictAnalysis,
    EntryDecision,
    EntryDecisionContext,
    EntryDecisionResult,
    FlatMarketResult,
    Position,
    Signal,
    SignalDirection,
    TrendAnalysis,
    TrendBias,
)
from trading_bot.observability.logging import get_logger

logger = get_logger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def build_entry_context(
    signals: Sequence[Signal],
    account_balance: Decimal,
    open_positions: Sequence[Position],
    global_trend_bias: TrendAnalysis | None,
    flat_market_analysis: FlatMarketResult | None = None,
    config: EntrySettings | None = None,
) -> EntryDecisionContext:
    """EntryDecisionContext with thresholds taken from EntrySettings."""
    cfg = config or EntrySettings()
    return EntryDecisionContext(
        signals=signals,
        account_balance=account_balance,
        open_positions=open_positions,
        global_trend_bias=global_trend_bias,
        min_confidence_threshold=cfg.min_confidence,
        signal_conflict_threshold=cfg.signal_conflict_threshold,
        flat_market_analysis=flat_market_analysis,
        flat_market_confidence_threshold=cfg.flat_market_confidence_threshold,
    )


def _skip(reason: str) -> EntryDecisionResult:
    return EntryDecisionResult(decision=EntryDecision.SKIP, reason=reason)


def _finite(value: object) -> Decimal | None:
    """Finite Decimal view of a numeric input; None when missing, NaN or not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return dec if dec.is_finite() else None


def filter_by_confidence(signals: Sequence[Signal], min_confidence: Decimal) -> list[Signal]:
    """
    Keep signals with confidence in [min_confidence, 100] (threshold inclusive).

    Missing signals and signals without a numeric confidence are dropped.
    """
    kept = []
    for signal in signals:
        confidence = _finite(getattr(signal, "confidence", None))
        if confidence is None:
            continue
        if _ZERO <= confidence <= _HUNDRED and confidence >= min_confidence:
            kept.append(signal)
    return kept


def analyze_direction_conflict(signals: Sequence[Signal]) -> ConflictAnalysis:
    """
    Count LONG vs SHORT votes; HOLD signals do not vote.

    conflict_level is the minority share of directional votes, consensus_strength
    the majority share. On an exact tie direction is None.
    """
    long_votes = sum(1 for s in signals if s.direction == SignalDirection.LONG)
    short_votes = sum(1 for s in signals if s.direction == SignalDirection.SHORT)
    total = long_votes + short_votes

    if total == 0:
        return ConflictAnalysis(
            direction=None,
            conflict_level=_ZERO,
            consensus_strength=_ZERO,
        )

    majority = max(long_votes, short_votes)
    minority = min(long_votes, short_votes)
    if long_votes > short_votes:
        direction = SignalDirection.LONG
    elif short_votes > long_votes:
        direction = SignalDirection.SHORT
    else:
        direction = None

    return ConflictAnalysis(
        direction=direction,
        conflict_level=Decimal(minority) / Decimal(total),
        consensus_strength=Decimal(majority) / Decimal(total),
        long_votes=long_votes,
        short_votes=short_votes,
    )


def is_direction_blocked(direction: SignalDirection, trend: TrendAnalysis | None) -> bool:
    """BULLISH blocks SHORT, BEARISH blocks LONG, plus any explicit restriction."""
    if trend is None:
        return False
    if direction in (trend.restricted_directions or ()):
        return True
    if trend.bias == TrendBias.BULLISH and direction == SignalDirection.SHORT:
        return True
    if trend.bias == TrendBias.BEARISH and direction == SignalDirection.LONG:
        return True
    return False


def evaluate_entry(context: EntryDecisionContext) -> EntryDecisionResult:
    """
    Decide ENTER / WAIT / SKIP for a batch of candidate signals.

    Pipeline:
    1. Confidence filter
    2. Flat market gate
    3. Direction conflict (exact tie first, then threshold)
    4. Trend alignment
    5. Highest-confidence signal of the winning direction

    Never raises: malformed input ends in SKIP.
    """
    try:
        return _evaluate_entry(context)
    except (ArithmeticError, AttributeError, TypeError, ValueError) as e:
        logger.warning(f"Entry evaluation failed, skipping: {e!r}")
        return _skip(f"Entry evaluation failed: {e}")


def _evaluate_entry(context: EntryDecisionContext) -> EntryDecisionResult:
    if not context.signals:
        return _skip("No signals")

    balance = _finite(context.account_balance)
    if balance is None or balance <= 0:
        return _skip(f"Invalid account balance: {context.account_balance}")

    threshold = context.min_confidence_threshold
    candidates = filter_by_confidence(context.signals, threshold)
    if not candidates:
        return _skip(f"All signals have confidence < {threshold}")

    flat = context.flat_market_analysis
    flat_confidence = _finite(getattr(flat, "confidence", None))
    flat_threshold = context.flat_market_confidence_threshold
    if flat is not None and flat.is_flat and flat_confidence is not None and flat_confidence >= flat_threshold:
        return _skip(
            f"Flat market detected (confidence {flat.confidence} >= "
            f"{context.flat_market_confidence_threshold})"
        )

    directional = [s for s in candidates if s.direction != SignalDirection.HOLD]
    analysis = analyze_direction_conflict(directional)

    if analysis.long_votes + analysis.short_votes == 0:
        return EntryDecisionResult(
            decision=EntryDecision.WAIT,
            reason="No directional signals (HOLD only)",
            conflict_analysis=analysis,
        )

    if analysis.long_votes == analysis.short_votes:
        return EntryDecisionResult(
            decision=EntryDecision.WAIT,
            reason=(
                f"NO CONSENSUS: Equal votes ({analysis.long_votes} LONG vs "
                f"{analysis.short_votes} SHORT)"
            ),
            conflict_analysis=analysis,
        )

    if analysis.conflict_level >= context.signal_conflict_threshold:
        return EntryDecisionResult(
            decision=EntryDecision.WAIT,
            reason=(
                f"Signal conflict too high: {analysis.conflict_level:.2f} >= "
                f"{context.signal_conflict_threshold} "
                f"({analysis.long_votes} LONG vs {analysis.short_votes} SHORT)"
            ),
            conflict_analysis=analysis,
        )

    direction = analysis.direction
    if is_direction_blocked(direction, context.global_trend_bias):
        bias = context.global_trend_bias.bias.value
        return EntryDecisionResult(
            decision=EntryDecision.SKIP,
            reason=f"Trend misalignment: {direction.value} blocked by {bias} trend",
            conflict_analysis=analysis,
        )

    # max() keeps the first of equal-confidence signals, so selection is stable
    selected = max(
        (s for s in directional if s.direction == direction),
        key=lambda s: _finite(s.confidence),
    )

    logger.debug(
        f"Entry approved: {direction.value} conf={selected.confidence} "
        f"consensus={analysis.consensus_strength:.2f}"
    )
    return EntryDecisionResult(
        decision=EntryDecision.ENTER,
        reason=(
            f"{direction.value} consensus {analysis.consensus_strength:.0%} "
            f"- selected {selected.type} signal (confidence {selected.confidence})"
        ),
        selected_signal=selected,
        conflict_analysis=analysis,
    )
