"""
Weighted signal aggregation.

Combines analyzer signals into a single direction using per-source weights,
a conflict check and a blind-zone penalty for thinly supported directions.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from trading_bot.config.settings import AggregationSettings
from trading_bot.domain.models import Signal, SignalDirection

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class WeightedScore:
    """Weighted confidence of all signals voting one direction."""

    total: Decimal
    average: Decimal
    count: int
    breakdown: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SignalConflict:
    """Vote-count conflict between the LONG and SHORT camps."""

    conflict_level: Decimal
    consensus_strength: Decimal
    direction: SignalDirection | None
    should_wait: bool
    reasoning: str


@dataclass(frozen=True, slots=True)
class AggregationResult:
    """Aggregated direction; direction is None when thresholds are not met."""

    direction: SignalDirection | None
    total_score: Decimal
    confidence: Decimal
    signal_count: int
    applied_penalty: Decimal
    breakdown: dict[str, Decimal]
    conflict: SignalConflict


def normalize_confidence(confidence: Decimal) -> Decimal:
    """Map 0-100 confidences onto 0-1; values already in 0-1 pass through."""
    return confidence / _HUNDRED if confidence > _ONE else confidence


def calculate_weighted_score(
    signals: Sequence[Signal],
    weights: Mapping[str, Decimal],
    default_weight: Decimal = _ZERO,
) -> WeightedScore:
    """Weighted mean confidence; sources with zero weight are ignored."""
    total_weighted = _ZERO
    total_weight = _ZERO
    breakdown: dict[str, Decimal] = {}

    for signal in signals:
        weight = weights.get(signal.source, default_weight)
        if weight <= 0:
            continue
        weighted = normalize_confidence(signal.confidence) * weight
        total_weighted += weighted
        total_weight += weight
        breakdown[signal.source] = weighted

    average = total_weighted / total_weight if total_weight > 0 else _ZERO
    return WeightedScore(total=average, average=average, count=len(signals), breakdown=breakdown)


def analyze_signal_conflicts(
    long_score: WeightedScore,
    short_score: WeightedScore,
    conflict_threshold: Decimal,
) -> SignalConflict:
    """Equal votes always wait; otherwise wait when conflict is strictly above threshold."""
    total = long_score.count + short_score.count
    if total == 0:
        return SignalConflict(_ZERO, _ZERO, None, False, "No signals available")

    minority = min(long_score.count, short_score.count)
    majority = max(long_score.count, short_score.count)
    conflict_level = Decimal(minority) / Decimal(total)
    consensus = Decimal(majority) / Decimal(total)
    conflict_pct = round(conflict_level * _HUNDRED)

    if long_score.count == short_score.count:
        return SignalConflict(
            conflict_level,
            consensus,
            None,
            True,
            f"NO CONSENSUS: {long_score.count} LONG = {short_score.count} SHORT. Equal votes, no clear direction.",
        )
    if conflict_level > conflict_threshold:
        return SignalConflict(
            conflict_level,
            consensus,
            None,
            True,
            f"CONFLICT DETECTED: {long_score.count} LONG vs {short_score.count} SHORT "
            f"({conflict_pct}% conflict). Waiting for clarity.",
        )

    if long_score.count > short_score.count:
        direction, votes = SignalDirection.LONG, long_score.count
    else:
        direction, votes = SignalDirection.SHORT, short_score.count
    return SignalConflict(
        conflict_level,
        consensus,
        direction,
        False,
        f"{direction.value} consensus: {votes}/{total} signals (conflict: {conflict_pct}%)",
    )


def blind_zone_penalty(score: WeightedScore, direction: SignalDirection, config: AggregationSettings) -> Decimal:
    """Penalty factor when too few signals back the winning direction."""
    if not config.blind_zone_enabled or score.count >= config.blind_zone_min_signals:
        return _ONE
    if direction == SignalDirection.LONG:
        return config.blind_zone_long_penalty
    return config.blind_zone_short_penalty


def aggregate_signals_weighted(
    signals: Sequence[Signal],
    config: AggregationSettings | None = None,
) -> AggregationResult:
    """Aggregate analyzer signals into one direction (or None to wait)."""
    cfg = config or AggregationSettings()

    if not signals:
        return AggregationResult(
            direction=None,
            total_score=_ZERO,
            confidence=_ZERO,
            signal_count=0,
            applied_penalty=_ONE,
            breakdown={},
            conflict=SignalConflict(_ZERO, _ZERO, None, False, "No signals available"),
        )

    long_score = calculate_weighted_score(
        [s for s in signals if s.direction == SignalDirection.LONG], cfg.weights, cfg.default_weight
    )
    short_score = calculate_weighted_score(
        [s for s in signals if s.direction == SignalDirection.SHORT], cfg.weights, cfg.default_weight
    )

    # Ties on score go to LONG; the vote-count conflict check catches real ties
    if long_score.total >= short_score.total:
        winning, direction = long_score, SignalDirection.LONG
    else:
        winning, direction = short_score, SignalDirection.SHORT

    conflict = analyze_signal_conflicts(long_score, short_score, cfg.conflict_threshold)
    if conflict.should_wait:
        return AggregationResult(
            direction=None,
            total_score=winning.total,
            confidence=winning.average,
            signal_count=winning.count,
            applied_penalty=_ONE,
            breakdown=winning.breakdown,
            conflict=conflict,
        )

    penalty = blind_zone_penalty(winning, direction, cfg)
    confidence = min(_ONE, winning.average * penalty)
    meets = winning.total >= cfg.min_total_score and confidence >= cfg.min_confidence

    return AggregationResult(
        direction=direction if meets else None,
        total_score=winning.total,
        confidence=confidence,
        signal_count=winning.count,
        applied_penalty=penalty,
        breakdown=winning.breakdown,
        conflict=conflict,
    )
