"""
Position Exiting Service.

Executes the actions produced by the exit state machine against the
exchange: partial closes, stop-loss moves, trailing activation and the
full close flow (exchange close, order cleanup, journal, risk feedback,
alert).

One writer per position: every execution runs under a per-position
asyncio.Lock. A full close arriving while another execution holds the
lock is rejected with "Exit already in progress"; partial actions wait.
The lock is dropped after a successful full close, and only the most
recent MAX_TRACKED_CLOSED closed ids are remembered.

Exchange calls run under RETRY. Order cleanup and alerts run under SKIP
and the journal under FALLBACK, so none of them can abort a close.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, TypeVar

from trading_bot.config.settings import Settings, get_settings
from trading_bot.domain.errors import ExitExecutionError, TradingError
from trading_bot.domain.exits import calculate_profit_percent, evaluate_exit
from trading_bot.domain.models import (
    ExitAction,
    ExitActionDetail,
    ExitDecisionContext,
    ExitDecisionResult,
    Position,
    PositionSide,
    PositionState,
    PositionStatus,
    StopLoss,
    TradeRecord,
)
from trading_bot.domain.result import Result
from trading_bot.observability.error_registry import ErrorRegistry, get_error_registry
from trading_bot.observability.logging import LOG_TAG_EXIT, LOG_TAG_TRADE, get_logger
from trading_bot.ports.exchange import ExchangePort
from trading_bot.ports.indicators import IndicatorProviderPort
from trading_bot.ports.journal import JournalPort
from trading_bot.ports.notification import NotificationPort
from trading_bot.services.error_handler import (
    ErrorHandler,
    ErrorHandlingConfig,
    RecoveryStrategy,
    normalize_error,
)
from trading_bot.services.risk_manager import RiskManager

logger = get_logger(__name__)

T = TypeVar("T")

FULL_CLOSE_PERCENT = Decimal("100")
_HUNDRED = Decimal("100")

# Closed position ids remembered for idempotent close checks
MAX_TRACKED_CLOSED = 1000

# Exchange messages meaning the position is already flat (closed by SL/TP on exchange)
ALREADY_CLOSED_MARKERS = ("position is zero", "reduce-only")


def _is_already_closed(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in ALREADY_CLOSED_MARKERS)


@dataclass(frozen=True, slots=True)
class ExitExecutionResult:
    """Outcome of executing exit actions for one position."""

    success: bool
    message: str
    position: Position | None = None
    actions_executed: tuple[ExitAction, ...] = ()
    realized_pnl: Decimal | None = None
    trade: TradeRecord | None = None
    error: TradingError | None = None


class PositionExitingService:
    """Executes exit decisions for open positions."""

    def __init__(
        self,
        exchange: ExchangePort,
        journal: JournalPort | None = None,
        notifier: NotificationPort | None = None,
        *,
        error_handler: ErrorHandler | None = None,
        registry: ErrorRegistry | None = None,
        settings: Settings | None = None,
        risk_manager: RiskManager | None = None,
        indicators: IndicatorProviderPort | None = None,
    ):
        self.exchange = exchange
        self.journal = journal
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.error_handler = error_handler or ErrorHandler()
        self.registry = registry or get_error_registry()
        self.risk_manager = risk_manager
        self.indicators = indicators

        self._exit_locks: dict[str, asyncio.Lock] = {}
        # Positions whose full close has started or finished, oldest first
        self._closed_positions: OrderedDict[str, None] = OrderedDict()
        self.max_tracked_closed = MAX_TRACKED_CLOSED

    def _get_exit_lock(self, position_id: str) -> asyncio.Lock:
        """Get or create exit lock for position."""
        if position_id not in self._exit_locks:
            self._exit_locks[position_id] = asyncio.Lock()
        return self._exit_locks[position_id]

    def is_exit_in_progress(self, position_id: str) -> bool:
        lock = self._exit_locks.get(position_id)
        return lock is not None and lock.locked()

    def _release_exit_lock(self, position_id: str, result: ExitExecutionResult) -> None:
        """Forget the lock of a fully closed position once nobody holds it."""
        lock = self._exit_locks.get(position_id)
        if result.success and position_id in self._closed_positions and lock is not None and not lock.locked():
            del self._exit_locks[position_id]

    def _mark_closed(self, position_id: str) -> None:
        self._closed_positions[position_id] = None
        self._closed_positions.move_to_end(position_id)
        while len(self._closed_positions) > self.max_tracked_closed:
            self._closed_positions.popitem(last=False)

    # =========================================================================
    # Entry points
    # =========================================================================

    async def process_price_update(
        self,
        position: Position,
        current_state: PositionState,
        current_price: Decimal,
    ) -> tuple[ExitDecisionResult, ExitExecutionResult]:
        """Evaluate the exit state machine for a price tick and execute its actions."""
        indicators = None
        if self.indicators is not None:
            # Optional input; a failed fetch degrades to no indicators
            fetched = await self._guarded(
                lambda: self.indicators.get_exit_indicators(position.symbol),
                RecoveryStrategy.GRACEFUL_DEGRADE,
                "PositionExiting.indicators",
                position,
            )
            indicators = fetched.unwrap_or(None)

        decision = evaluate_exit(
            ExitDecisionContext(
                position=position,
                current_price=current_price,
                current_state=current_state,
                indicators=indicators,
                config=self.settings.exits,
            )
        )
        logger.debug(f"{LOG_TAG_EXIT} {position.symbol}: {decision.state_transition} ({decision.reason})")
        return decision, await self.execute_exit_actions(position, decision, current_price)

    async def execute_exit_actions(
        self,
        position: Position,
        decision: ExitDecisionResult,
        current_price: Decimal,
    ) -> ExitExecutionResult:
        """
        Execute the decision's actions in order.

        Returns the updated position copy; the input position is never
        modified. Stops at the first failed action.
        """
        if self._is_closed(position):
            return ExitExecutionResult(False, "Position already closed", position)
        if not decision.actions:
            return ExitExecutionResult(True, decision.reason, position)

        lock = self._get_exit_lock(position.position_id)
        async with lock:
            if self._is_closed(position):
                return ExitExecutionResult(False, "Position already closed", position)

            current = position
            executed: list[ExitAction] = []
            for detail in decision.actions:
                if detail.action == ExitAction.CLOSE_ALL:
                    result = await self._close_full(current, current_price, decision.reason)
                    result = replace(result, actions_executed=(*executed, ExitAction.CLOSE_ALL))
                    break

                updated, error = await self._execute_action(current, detail, current_price)
                if error is not None:
                    return ExitExecutionResult(
                        False,
                        f"{detail.action.value} failed: {error.message}",
                        current,
                        actions_executed=tuple(executed),
                        error=error,
                    )
                current = updated
                executed.append(detail.action)
            else:
                return ExitExecutionResult(True, decision.reason, current, actions_executed=tuple(executed))

        self._release_exit_lock(position.position_id, result)
        return result

    async def close_full_position(
        self,
        position: Position,
        current_price: Decimal,
        reason: str,
    ) -> ExitExecutionResult:
        """Close 100% of the position; idempotent per position."""
        if self._is_closed(position):
            return ExitExecutionResult(False, "Position already closed", position)

        lock = self._get_exit_lock(position.position_id)
        if lock.locked():
            logger.info(f"{LOG_TAG_EXIT} Exit already in progress for {position.symbol} ({position.position_id})")
            return ExitExecutionResult(False, "Exit already in progress", position)

        async with lock:
            result = await self._close_full(position, current_price, reason)
        self._release_exit_lock(position.position_id, result)
        return result

    # =========================================================================
    # Actions
    # =========================================================================

    async def _execute_action(
        self,
        position: Position,
        detail: ExitActionDetail,
        current_price: Decimal,
    ) -> tuple[Position, TradingError | None]:
        if detail.action == ExitAction.CLOSE_PERCENT:
            return await self._close_partial(position, detail.percent, current_price)
        if detail.action == ExitAction.UPDATE_SL:
            return await self._update_stop_loss(position, detail.new_stop_loss)
        if detail.action == ExitAction.ACTIVATE_TRAILING:
            return await self._activate_trailing(position, detail.trailing_distance, current_price)

        logger.warning(f"{LOG_TAG_EXIT} Unknown exit action {detail.action!r} - ignored")
        return position, None

    async def _close_partial(
        self,
        position: Position,
        percent: Decimal | None,
        current_price: Decimal,
    ) -> tuple[Position, TradingError | None]:
        if percent is None or percent <= 0 or percent > _HUNDRED:
            return position, ExitExecutionError(
                f"Invalid close percent: {percent}", context={"position_id": position.position_id}
            )

        qty_to_close = position.quantity * percent / _HUNDRED
        logger.info(
            f"{LOG_TAG_EXIT} Closing {percent}% of {position.symbol}: qty={qty_to_close} "
            f"(remaining {position.quantity - qty_to_close})",
            extra={"position_id": position.position_id, "symbol": position.symbol},
        )

        result = await self._guarded(
            lambda: self.exchange.close_position(position.position_id, percent),
            RecoveryStrategy.RETRY,
            "PositionExiting.close_partial",
            position,
        )
        if result.is_err():
            return position, result.error

        pnl, fees = self.calculate_realized_pnl(position, current_price, qty_to_close)
        await self._alert(
            position,
            f"Partial Close ({percent}%) {position.symbol}\n"
            f"Exit: {current_price:.8f}\nPnL: {pnl:.4f} USDT (fees {fees:.4f})",
        )
        return replace(position, quantity=position.quantity - qty_to_close), None

    async def _update_stop_loss(
        self,
        position: Position,
        new_price: Decimal | None,
    ) -> tuple[Position, TradingError | None]:
        if new_price is None:
            return position, ExitExecutionError(
                "UPDATE_SL without a price", context={"position_id": position.position_id}
            )

        current_sl = position.stop_loss
        if current_sl is not None and not self._is_more_favorable(position.side, new_price, current_sl.price):
            logger.debug(
                f"{LOG_TAG_EXIT} SL update not favorable for {position.symbol}: "
                f"current={current_sl.price} new={new_price} - skipped"
            )
            return position, None

        result = await self._guarded(
            lambda: self.exchange.update_stop_loss(position.position_id, new_price),
            RecoveryStrategy.RETRY,
            "PositionExiting.update_stop_loss",
            position,
        )
        if result.is_err():
            return position, result.error

        logger.info(
            f"{LOG_TAG_EXIT} SL moved for {position.symbol}: "
            f"{current_sl.price if current_sl else None} -> {new_price}",
            extra={"position_id": position.position_id, "symbol": position.symbol},
        )
        stop_loss = StopLoss(
            price=new_price,
            initial_price=current_sl.initial_price if current_sl else new_price,
            is_breakeven=True,
            is_trailing=current_sl.is_trailing if current_sl else False,
            trailing_distance=current_sl.trailing_distance if current_sl else None,
            updated_at=datetime.now(UTC),
        )
        return replace(position, stop_loss=stop_loss), None

    async def _activate_trailing(
        self,
        position: Position,
        distance: Decimal | None,
        current_price: Decimal,
    ) -> tuple[Position, TradingError | None]:
        if distance is None or distance <= 0:
            return position, ExitExecutionError(
                f"Invalid trailing distance: {distance}", context={"position_id": position.position_id}
            )

        trailing_price = current_price - distance if position.side == PositionSide.LONG else current_price + distance

        result = await self._guarded(
            lambda: self.exchange.update_stop_loss(position.position_id, trailing_price),
            RecoveryStrategy.RETRY,
            "PositionExiting.activate_trailing",
            position,
        )
        if result.is_err():
            return position, result.error

        logger.info(
            f"{LOG_TAG_EXIT} Trailing stop active for {position.symbol}: "
            f"price={current_price} distance={distance} stop={trailing_price}",
            extra={"position_id": position.position_id, "symbol": position.symbol},
        )
        current_sl = position.stop_loss
        stop_loss = StopLoss(
            price=trailing_price,
            initial_price=current_sl.initial_price if current_sl else trailing_price,
            is_breakeven=current_sl.is_breakeven if current_sl else False,
            is_trailing=True,
            trailing_distance=distance,
            updated_at=datetime.now(UTC),
        )
        return replace(position, stop_loss=stop_loss), None

    # =========================================================================
    # Full close
    # =========================================================================

    async def _close_full(self, position: Position, current_price: Decimal, reason: str) -> ExitExecutionResult:
        pid = position.position_id
        if self._is_closed(position):
            return ExitExecutionResult(False, "Position already closed", position)

        # Marked before the first await so a re-entrant trigger sees it
        self._mark_closed(pid)
        log_extra = {"position_id": pid, "symbol": position.symbol}
        logger.info(
            f"{LOG_TAG_TRADE} Closing {position.symbol} {position.side.value} qty={position.quantity} "
            f"@ {current_price}: {reason}",
            extra=log_extra,
        )

        async def close_on_exchange() -> bool:
            try:
                await self.exchange.close_position(pid, FULL_CLOSE_PERCENT)
            except Exception as e:
                if _is_already_closed(e):
                    logger.info(f"{LOG_TAG_TRADE} {position.symbol} already closed on exchange (SL/TP triggered)")
                    return False
                raise
            return True

        closed = await self._guarded(close_on_exchange, RecoveryStrategy.RETRY, "PositionExiting.close_full", position)
        if closed.is_err():
            # Not closed: allow a later attempt
            self._closed_positions.pop(pid, None)
            logger.error(
                f"{LOG_TAG_TRADE} Failed to close {position.symbol}: {closed.error.message}",
                extra=log_extra,
            )
            return ExitExecutionResult(
                False, f"Failed to close position: {closed.error.message}", position, error=closed.error
            )

        await self._guarded(
            lambda: self.exchange.cancel_all_conditional_orders(position.symbol),
            RecoveryStrategy.SKIP,
            "PositionExiting.cancel_conditional_orders",
            position,
        )

        pnl, fees = self.calculate_realized_pnl(position, current_price)
        trade = TradeRecord(
            position_id=pid,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=current_price,
            quantity=position.quantity,
            realized_pnl=pnl,
            pnl_percent=calculate_profit_percent(position.side, position.entry_price, current_price),
            fees=fees,
            exit_reason=reason,
        )
        logger.info(
            f"{LOG_TAG_TRADE} {position.symbol} closed: PnL={pnl:.4f} USDT ({trade.pnl_percent:.2f}%), fees={fees:.4f}",
            extra=log_extra,
        )

        self._record_in_journal(trade, position)
        if self.risk_manager is not None:
            self.risk_manager.record_trade_result(trade)

        await self._alert(
            position,
            f"Position Closed {position.symbol} {position.side.value}\n"
            f"Reason: {reason}\nExit: {current_price:.8f}\n"
            f"PnL: {pnl:.4f} USDT ({trade.pnl_percent:.2f}%)",
        )

        closed_position = replace(position, status=PositionStatus.CLOSED, unrealized_pnl=Decimal("0"))
        return ExitExecutionResult(
            True,
            f"Position closed: {reason}",
            closed_position,
            realized_pnl=pnl,
            trade=trade,
        )

    def _record_in_journal(self, trade: TradeRecord, position: Position) -> None:
        if self.journal is None:
            return
        result = self._guarded_sync(
            lambda: self.journal.record_trade_close(trade),
            RecoveryStrategy.FALLBACK,
            "PositionExiting.journal",
            position,
        )
        if result.is_ok() and result.value is None:
            logger.warning(
                f"{LOG_TAG_TRADE} Journal unavailable - {trade.symbol} close kept in logs only "
                f"(pnl={trade.realized_pnl}, reason={trade.exit_reason})"
            )

    async def _alert(self, position: Position, message: str) -> None:
        if self.notifier is None:
            return
        await self._guarded(
            lambda: self.notifier.send_alert(message),
            RecoveryStrategy.SKIP,
            "PositionExiting.alert",
            position,
        )

    # =========================================================================
    # Calculations
    # =========================================================================

    def calculate_realized_pnl(
        self,
        position: Position,
        exit_price: Decimal,
        quantity: Decimal | None = None,
    ) -> tuple[Decimal, Decimal]:
        """
        Net PnL and fees for closing `quantity` (default: all) at `exit_price`.

        Fees are charged on entry and exit notional at the taker rate.
        """
        qty = position.quantity if quantity is None else quantity
        gross = (exit_price - position.entry_price) * qty * position.side.sign * position.leverage
        fees = (position.entry_price * qty + exit_price * qty) * self.settings.exits.taker_fee_rate
        return gross - fees, fees

    @staticmethod
    def _is_more_favorable(side: PositionSide, new_price: Decimal, current_price: Decimal) -> bool:
        if side == PositionSide.LONG:
            return new_price > current_price
        return new_price < current_price

    def _is_closed(self, position: Position) -> bool:
        return position.status == PositionStatus.CLOSED or position.position_id in self._closed_positions

    # =========================================================================
    # Error handling
    # =========================================================================

    def _handling_config(self, strategy: RecoveryStrategy, operation: str, position: Position) -> ErrorHandlingConfig:
        return ErrorHandlingConfig(
            strategy=strategy,
            retry=self.settings.retry,
            operation=operation,
            context={"position_id": position.position_id, "symbol": position.symbol},
        )

    async def _guarded(
        self,
        operation: Callable[[], Awaitable[T]],
        strategy: RecoveryStrategy,
        name: str,
        position: Position,
    ) -> Result[T]:
        """Run an async call under `strategy` and record every failure it saw."""
        failures: list[TradingError] = []

        async def attempt() -> T:
            try:
                return await operation()
            except Exception as e:
                failures.append(normalize_error(e))
                raise

        started = time.monotonic()
        result = await self.error_handler.execute(attempt, self._handling_config(strategy, name, position))
        self._record_failures(failures, result, started)
        return result

    def _guarded_sync(
        self,
        operation: Callable[[], T],
        strategy: RecoveryStrategy,
        name: str,
        position: Position,
    ) -> Result[T]:
        """Synchronous _guarded()."""
        failures: list[TradingError] = []

        def attempt() -> T:
            try:
                return operation()
            except Exception as e:
                failures.append(normalize_error(e))
                raise

        started = time.monotonic()
        result = self.error_handler.execute_sync(attempt, self._handling_config(strategy, name, position))
        self._record_failures(failures, result, started)
        return result

    def _record_failures(self, failures: list[TradingError], result: Result[Any], started: float) -> None:
        elapsed_ms = (time.monotonic() - started) * 1000
        recovered = result.is_ok()
        for error in failures:
            self.registry.record(error, recovered=recovered, recovery_time_ms=elapsed_ms if recovered else None)
