"""
Unit tests for entry gating (evaluate_entry).
"""

from dataclasses import replace
from decimal import Decimal

import pytest
from conftest import make_position, make_signal

from trading_bot.config.settings import EntrySettings
from trading_bot.domain.entry import (
    analyze_direction_conflict,
    build_entry_context,
    evaluate_entry,
    filter_by_confidence,
)
from trading_bot.domain.models import (
    EntryDecision,
    EntryDecisionContext,
    FlatMarketResult,
    SignalDirection,
    TrendAnalysis,
    TrendBias,
)

pytestmark = pytest.mark.unit

LONG = SignalDirection.LONG
SHORT = SignalDirection.SHORT
HOLD = SignalDirection.HOLD


def entry_ctx(signals, **overrides) -> EntryDecisionContext:
    params = {
        "signals": signals,
        "account_balance": Decimal("1000"),
        "open_positions": [],
        "global_trend_bias": TrendAnalysis(bias=TrendBias.NEUTRAL),
    }
    params.update(overrides)
    return EntryDecisionContext(**params)


class TestValidation:
    def test_no_signals(self):
        result = evaluate_entry(entry_ctx([]))
        assert result.decision == EntryDecision.SKIP
        assert result.reason == "No signals"

    @pytest.mark.parametrize("balance", [Decimal("0"), Decimal("-10"), Decimal("NaN")])
    def test_invalid_balance(self, balance):
        result = evaluate_entry(entry_ctx([make_signal()], account_balance=balance))
        assert result.decision == EntryDecision.SKIP
        assert result.reason.startswith("Invalid account balance")

    def test_all_below_confidence(self):
        result = evaluate_entry(entry_ctx([make_signal(confidence="59"), make_signal(confidence="10")]))
        assert result.decision == EntryDecision.SKIP
        assert "confidence < 60" in result.reason


class TestConfidenceFilter:
    def test_threshold_inclusive(self):
        kept = filter_by_confidence([make_signal(confidence="60"), make_signal(confidence="59.99")], Decimal("60"))
        assert [s.confidence for s in kept] == [Decimal("60")]

    def test_out_of_range_excluded(self):
        kept = filter_by_confidence(
            [make_signal(confidence="101"), make_signal(confidence="-1"), make_signal(confidence="100")],
            Decimal("0"),
        )
        assert [s.confidence for s in kept] == [Decimal("100")]


class TestFlatMarket:
    def test_flat_market_at_threshold_skips(self):
        flat = FlatMarketResult(is_flat=True, confidence=Decimal("70"))
        result = evaluate_entry(entry_ctx([make_signal()], flat_market_analysis=flat))

        assert result.decision == EntryDecision.SKIP
        assert result.reason.startswith("Flat market detected")

    def test_low_confidence_flat_market_ignored(self):
        flat = FlatMarketResult(is_flat=True, confidence=Decimal("69"))
        result = evaluate_entry(entry_ctx([make_signal()], flat_market_analysis=flat))
        assert result.decision == EntryDecision.ENTER


class TestDirectionConflict:
    def test_clear_majority_enters_with_highest_confidence(self):
        """3 LONG (80/75/70) vs 1 SHORT (65): conflict 0.25 < 0.4 -> ENTER with the 80 signal."""
        signals = [
            make_signal(LONG, "80"),
            make_signal(LONG, "75"),
            make_signal(LONG, "70"),
            make_signal(SHORT, "65"),
        ]

        result = evaluate_entry(entry_ctx(signals))

        assert result.decision == EntryDecision.ENTER
        assert result.selected_signal is signals[0]
        assert result.conflict_analysis.conflict_level == Decimal("0.25")
        assert result.conflict_analysis.consensus_strength == Decimal("0.75")
        assert result.conflict_analysis.direction == LONG

    def test_equal_votes_wait(self):
        signals = [make_signal(LONG, "80"), make_signal(LONG, "75"), make_signal(SHORT, "80"), make_signal(SHORT, "70")]

        result = evaluate_entry(entry_ctx(signals, signal_conflict_threshold=Decimal("0.51")))

        assert result.decision == EntryDecision.WAIT
        assert "NO CONSENSUS" in result.reason
        assert "Equal votes" in result.reason

    def test_conflict_at_threshold_waits(self):
        """3 LONG vs 2 SHORT -> conflict 0.4, threshold 0.4 is inclusive."""
        signals = [make_signal(LONG)] * 3 + [make_signal(SHORT)] * 2

        result = evaluate_entry(entry_ctx(signals, signal_conflict_threshold=Decimal("0.4")))

        assert result.decision == EntryDecision.WAIT
        assert result.reason.startswith("Signal conflict too high")

    def test_large_even_split_waits(self):
        signals = [make_signal(LONG, "70")] * 25 + [make_signal(SHORT, "70")] * 25
        result = evaluate_entry(entry_ctx(signals))
        assert result.decision == EntryDecision.WAIT
        assert "Equal votes" in result.reason

    def test_hold_signals_do_not_vote(self):
        analysis = analyze_direction_conflict([make_signal(LONG), make_signal(HOLD), make_signal(HOLD)])
        assert (analysis.long_votes, analysis.short_votes) == (1, 0)
        assert analysis.conflict_level == Decimal("0")

    def test_hold_only_waits(self):
        result = evaluate_entry(entry_ctx([make_signal(HOLD), make_signal(HOLD)]))
        assert result.decision == EntryDecision.WAIT
        assert result.reason == "No directional signals (HOLD only)"


class TestTrendAlignment:
    def test_bearish_trend_blocks_long(self):
        trend = TrendAnalysis(bias=TrendBias.BEARISH)
        result = evaluate_entry(entry_ctx([make_signal(LONG)], global_trend_bias=trend))

        assert result.decision == EntryDecision.SKIP
        assert result.reason == "Trend misalignment: LONG blocked by BEARISH trend"

    def test_bullish_trend_blocks_short(self):
        trend = TrendAnalysis(bias=TrendBias.BULLISH)
        result = evaluate_entry(entry_ctx([make_signal(SHORT)], global_trend_bias=trend))
        assert result.decision == EntryDecision.SKIP

    def test_restricted_direction_blocks(self):
        trend = TrendAnalysis(bias=TrendBias.NEUTRAL, restricted_directions=(SHORT,))
        result = evaluate_entry(entry_ctx([make_signal(SHORT)], global_trend_bias=trend))
        assert result.decision == EntryDecision.SKIP

    def test_no_trend_context_allows(self):
        result = evaluate_entry(entry_ctx([make_signal(SHORT)], global_trend_bias=None))
        assert result.decision == EntryDecision.ENTER


class TestSelection:
    def test_equal_confidence_keeps_first(self):
        first = make_signal(LONG, "80", source="EMA_ANALYZER")
        second = make_signal(LONG, "80", source="RSI_ANALYZER")

        result = evaluate_entry(entry_ctx([first, second]))

        assert result.selected_signal is first

    def test_deterministic_and_input_untouched(self):
        signals = [make_signal(LONG, "80"), make_signal(LONG, "90"), make_signal(SHORT, "70")]
        context = entry_ctx(signals, open_positions=[make_position()])

        first = evaluate_entry(context)
        second = evaluate_entry(context)

        assert first == second
        assert first.selected_signal is second.selected_signal is signals[1]
        assert len(context.signals) == 3


class TestBuildEntryContext:
    def test_thresholds_from_settings(self):
        config = EntrySettings(min_confidence=Decimal("85"), signal_conflict_threshold=Decimal("0.3"))

        context = build_entry_context([make_signal(confidence="80")], Decimal("1000"), [], None, config=config)

        assert context.min_confidence_threshold == Decimal("85")
        assert context.signal_conflict_threshold == Decimal("0.3")
        assert context.flat_market_confidence_threshold == Decimal("70")
        assert evaluate_entry(context).reason == "All signals have confidence < 85"


class TestMalformedInput:
    """evaluate_entry returns a structured result for any input."""

    @pytest.mark.parametrize(
        "context",
        [
            entry_ctx([None]),
            entry_ctx([None, None, make_signal()]),
            entry_ctx([replace(make_signal(), confidence="80")]),
            entry_ctx([replace(make_signal(), confidence="high")]),
            entry_ctx([make_signal()], account_balance="abc"),
            entry_ctx([make_signal()], account_balance=None),
            entry_ctx([make_signal()], flat_market_analysis=FlatMarketResult(is_flat=True, confidence=None)),
            entry_ctx(
                [make_signal()],
                global_trend_bias=TrendAnalysis(bias=TrendBias.NEUTRAL, restricted_directions=None),
            ),
            entry_ctx([make_signal()], min_confidence_threshold=None),
            entry_ctx(5),
            None,
        ],
    )
    def test_never_raises(self, context):
        result = evaluate_entry(context)

        assert isinstance(result.decision, EntryDecision)
        assert result.reason

    def test_missing_signals_are_dropped(self):
        signal = make_signal()

        result = evaluate_entry(entry_ctx([None, signal]))

        assert result.decision == EntryDecision.ENTER
        assert result.selected_signal is signal

    def test_only_missing_signals_skip(self):
        result = evaluate_entry(entry_ctx([None]))

        assert result.decision == EntryDecision.SKIP
        assert result.reason == "All signals have confidence < 60"

    def test_string_confidence_is_compared_numerically(self):
        textual = replace(make_signal(), confidence="90")
        numeric = make_signal(confidence="80")

        result = evaluate_entry(entry_ctx([numeric, textual]))

        assert result.decision == EntryDecision.ENTER
        assert result.selected_signal is textual

    def test_non_numeric_balance_skips(self):
        result = evaluate_entry(entry_ctx([make_signal()], account_balance="abc"))

        assert result.decision == EntryDecision.SKIP
        assert result.reason == "Invalid account balance: abc"

    def test_flat_market_without_confidence_ignored(self):
        flat = FlatMarketResult(is_flat=True, confidence=None)

        result = evaluate_entry(entry_ctx([make_signal()], flat_market_analysis=flat))

        assert result.decision == EntryDecision.ENTER

    def test_trend_without_restrictions(self):
        trend = TrendAnalysis(bias=TrendBias.BEARISH, restricted_directions=None)

        assert evaluate_entry(entry_ctx([make_signal(SHORT)], global_trend_bias=trend)).decision == EntryDecision.ENTER
        assert evaluate_entry(entry_ctx([make_signal(LONG)], global_trend_bias=trend)).decision == EntryDecision.SKIP

    def test_missing_context_fails_safe(self):
        result = evaluate_entry(None)

        assert result.decision == EntryDecision.SKIP
        assert result.reason.startswith("Entry evaluation failed")
