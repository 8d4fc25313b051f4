"""
Canonical Domain Models.

All financial calculations use Decimal for precision.
Models handed to the decision functions are frozen; every decision
returns a new result instead of editing its inputs.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from trading_bot.config.settings import ExitSettings

# =============================================================================
# ENUMS
# =============================================================================


class PositionSide(str, Enum):
    """Direction of an open position."""

    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        """+1 for LONG, -1 for SHORT."""
        return 1 if self == PositionSide.LONG else -1


class SignalDirection(str, Enum):
    """Direction proposed by an entry signal."""

    LONG = "LONG"
    SHORT = "SHORT"
    HOLD = "HOLD"


class PositionState(str, Enum):
    """
    Exit lifecycle state.

    Forward-only: OPEN -> TP1_HIT -> TP2_HIT -> TP3_HIT; CLOSED from anywhere.
    """

    OPEN = "OPEN"
    TP1_HIT = "TP1_HIT"
    TP2_HIT = "TP2_HIT"
    TP3_HIT = "TP3_HIT"
    CLOSED = "CLOSED"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    def is_terminal(self) -> bool:
        return self == PositionState.CLOSED


_STATE_RANK = {
    PositionState.OPEN: 0,
    PositionState.TP1_HIT: 1,
    PositionState.TP2_HIT: 2,
    PositionState.TP3_HIT: 3,
    PositionState.CLOSED: 4,
}


class PositionStatus(str, Enum):
    """Exchange-level status of a position."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ExitAction(str, Enum):
    """Action the exit state machine asks the orchestrator to perform."""

    CLOSE_ALL = "CLOSE_ALL"
    CLOSE_PERCENT = "CLOSE_PERCENT"
    UPDATE_SL = "UPDATE_SL"
    ACTIVATE_TRAILING = "ACTIVATE_TRAILING"


class EntryDecision(str, Enum):
    """Outcome of entry evaluation."""

    ENTER = "ENTER"
    WAIT = "WAIT"
    SKIP = "SKIP"


class TrendBias(str, Enum):
    """Higher timeframe trend bias."""

    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


# =============================================================================
# POSITION
# =============================================================================


@dataclass(frozen=True, slots=True)
class StopLoss:
    """Stop-loss of a position."""

    price: Decimal
    initial_price: Decimal
    is_breakeven: bool = False
    is_trailing: bool = False
    trailing_distance: Decimal | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class TakeProfit:
    """A single take-profit level (level numbers start at 1)."""

    level: int
    price: Decimal
    percent: Decimal = Decimal("0")  # distance from entry, in %
    size_percent: Decimal = Decimal("0")  # share of the position closed at this level
    hit: bool = False


@dataclass(frozen=True, slots=True)
class Position:
    """
    A live trade.

    Take-profits are ordered by level: ascending price for LONG,
    descending price for SHORT.
    """

    position_id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal
    quantity: Decimal
    stop_loss: StopLoss | None
    take_profits: Sequence[TakeProfit] = ()
    leverage: Decimal = Decimal("1")
    margin_used: Decimal = Decimal("0")
    opened_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    unrealized_pnl: Decimal = Decimal("0")
    order_id: str | None = None
    reason: str = ""
    status: PositionStatus = PositionStatus.OPEN

    @property
    def notional(self) -> Decimal:
        return abs(self.quantity * self.entry_price)


# =============================================================================
# SIGNALS & MARKET CONTEXT
# =============================================================================


@dataclass(frozen=True, slots=True)
class Signal:
    """Candidate entry produced by an upstream analyzer."""

    direction: SignalDirection
    confidence: Decimal  # 0-100
    price: Decimal
    type: str = "TREND_FOLLOWING"
    stop_loss: Decimal | None = None
    take_profits: Sequence[TakeProfit] = ()
    reason: str = ""
    source: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class TrendAnalysis:
    """Global trend context."""

    bias: TrendBias
    strength: Decimal = Decimal("0")
    restricted_directions: Sequence[SignalDirection] = ()
    timeframe: str = ""
    reasoning: Sequence[str] = ()


@dataclass(frozen=True, slots=True)
class FlatMarketResult:
    """Output of the flat/range market detector."""

    is_flat: bool
    confidence: Decimal  # 0-100
    factors: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Candle:
    """OHLCV bar."""

    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")


@dataclass(frozen=True, slots=True)
class ExitIndicators:
    """Optional market context for smart trailing."""

    atr_percent: Decimal | None = None
    current_volume: Decimal | None = None
    avg_volume: Decimal | None = None
    ema20: Decimal | None = None


# =============================================================================
# DECISION CONTEXTS & RESULTS
# =============================================================================


@dataclass(frozen=True, slots=True)
class ExitActionDetail:
    """One action emitted by the exit state machine."""

    action: ExitAction
    percent: Decimal | None = None
    new_stop_loss: Decimal | None = None
    trailing_distance: Decimal | None = None


@dataclass(frozen=True, slots=True)
class ExitDecisionContext:
    """Input bundle for evaluate_exit. Any field may be missing or invalid."""

    position: Position | None
    current_price: Decimal | None
    current_state: PositionState | str | None
    indicators: ExitIndicators | None = None
    config: ExitSettings | None = None


@dataclass(frozen=True, slots=True)
class ExitDecisionResult:
    """Next state plus the ordered actions to execute."""

    state: PositionState
    actions: tuple[ExitActionDetail, ...]
    reason: str
    state_transition: str
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ConflictAnalysis:
    """Direction vote breakdown among candidate signals."""

    direction: SignalDirection | None
    conflict_level: Decimal
    consensus_strength: Decimal
    long_votes: int = 0
    short_votes: int = 0


@dataclass(frozen=True, slots=True)
class EntryDecisionContext:
    """Input bundle for evaluate_entry."""

    signals: Sequence[Signal]
    account_balance: Decimal
    open_positions: Sequence[Position]
    global_trend_bias: TrendAnalysis | None
    min_confidence_threshold: Decimal = Decimal("60")
    signal_conflict_threshold: Decimal = Decimal("0.4")
    flat_market_analysis: FlatMarketResult | None = None
    flat_market_confidence_threshold: Decimal = Decimal("70")


@dataclass(frozen=True, slots=True)
class EntryDecisionResult:
    """Entry decision with the selected signal on ENTER."""

    decision: EntryDecision
    reason: str
    selected_signal: Signal | None = None
    conflict_analysis: ConflictAnalysis | None = None


# =============================================================================
# RISK
# =============================================================================


@dataclass(frozen=True, slots=True)
class TradeRecord:
    """Closed trade outcome fed back into the risk manager and journal."""

    position_id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    realized_pnl: Decimal | None = None
    pnl_percent: Decimal | None = None
    fees: Decimal = Decimal("0")
    exit_reason: str = ""
    closed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class RiskDecision:
    """Result of RiskManager.can_trade."""

    allowed: bool
    reason: str | None = None
    adjusted_position_size: Decimal | None = None
    risk_details: dict[str, Any] = field(default_factory=dict)
