"""
Risk Manager.

Gatekeeper in front of every entry: validates the signal, enforces daily
PnL limits, the loss-streak stop, concurrent position/exposure limits and
computes the position size. Trade outcomes feed back into the rolling
daily state via `record_trade_result`.

Contract violations (malformed signal) raise RiskValidationError.
Business rejections and operational conditions (zero balance) return a
RiskDecision with allowed=False.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from trading_bot.config.settings import RiskSettings
from trading_bot.domain.errors import InsufficientAccountBalanceError, RiskValidationError
from trading_bot.domain.models import Position, RiskDecision, Signal, TradeRecord
from trading_bot.observability.error_registry import ErrorRegistry
from trading_bot.observability.logging import LOG_TAG_RISK, get_logger
from trading_bot.services.error_handler import ErrorHandler, ErrorHandlingConfig, RecoveryStrategy

logger = get_logger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")


def _finite(value: Any) -> Decimal | None:
    """Decimal view of `value`, or None when missing, NaN or infinite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return dec if dec.is_finite() else None


class RiskManager:
    """
    Rolling risk state for one trading session.

    Not shared across sessions; one instance serializes all risk decisions.
    """

    def __init__(
        self,
        settings: RiskSettings | None = None,
        *,
        error_handler: ErrorHandler | None = None,
        registry: ErrorRegistry | None = None,
        log: logging.Logger | None = None,
        account_balance: Decimal = _ZERO,
    ):
        self.settings = settings or RiskSettings()
        self.logger = log or logger
        self.error_handler = error_handler or ErrorHandler(log=self.logger)
        self.registry = registry

        self.account_balance = account_balance
        self.daily_pnl = _ZERO
        self.daily_pnl_percent = _ZERO
        self.consecutive_losses = 0
        self.last_loss_time: datetime | None = None
        self.total_exposure = _ZERO
        self._trading_day: date = datetime.now(UTC).date()

    # =========================================================================
    # Entry gate
    # =========================================================================

    async def can_trade(
        self,
        signal: Signal,
        account_balance: Decimal,
        open_positions: Sequence[Position],
    ) -> RiskDecision:
        """
        Decide whether a new trade is allowed and how large it may be.

        Raises:
            RiskValidationError: signal price or confidence invalid.
        """
        await self._validate_signal(signal)

        balance = _finite(account_balance)
        if balance is None or balance <= 0:
            return await self._deny_balance(account_balance)

        self._roll_day()
        self.account_balance = balance
        self.daily_pnl_percent = self._daily_percent(balance, self.daily_pnl_percent)

        open_positions = list(open_positions or ())
        details: dict[str, Any] = {
            "daily_pnl_percent": self.daily_pnl_percent,
            "consecutive_losses": self.consecutive_losses,
            "open_positions": len(open_positions),
        }

        base_size = balance * self.settings.position_sizing.risk_per_trade_pct / _HUNDRED
        multiplier = self.get_streak_multiplier()
        size = self._clamp_size(base_size * multiplier, balance)
        details.update({"base_position_size": base_size, "streak_multiplier": multiplier})

        reason = self._check_daily_limits() or self._check_loss_streak()
        if reason is None:
            reason, exposure_pct = self._check_concurrent_risk(open_positions, balance, size)
            details["total_exposure_percent"] = exposure_pct
        if reason is not None:
            self.logger.warning(f"{LOG_TAG_RISK} Trade denied: {reason}")
            return RiskDecision(allowed=False, reason=reason, risk_details=details)

        self.logger.info(
            f"{LOG_TAG_RISK} Trade allowed: size={size:.2f} USDT "
            f"(base={base_size:.2f}, streak x{multiplier}, daily {self.daily_pnl_percent:.2f}%)"
        )
        return RiskDecision(allowed=True, adjusted_position_size=size, risk_details=details)

    async def _validate_signal(self, signal: Signal) -> None:
        problem = None
        if signal is None:
            problem = "Signal is required"
        else:
            price = _finite(getattr(signal, "price", None))
            confidence = _finite(getattr(signal, "confidence", None))
            if price is None or price <= 0:
                problem = f"Invalid signal price: {getattr(signal, 'price', None)}"
            elif confidence is None or confidence < 0 or confidence > _HUNDRED:
                problem = f"Invalid signal confidence: {getattr(signal, 'confidence', None)} (must be 0-100)"

        if problem is None:
            return

        error = RiskValidationError(problem, context={"signal": repr(signal)})
        await self.error_handler.handle(
            error,
            ErrorHandlingConfig(strategy=RecoveryStrategy.THROW, operation="RiskManager.can_trade"),
        )
        self._record(error, recovered=False)
        raise error

    async def _deny_balance(self, account_balance: Any) -> RiskDecision:
        error = InsufficientAccountBalanceError(
            f"Invalid account balance: {account_balance}",
            context={"account_balance": str(account_balance)},
        )
        result = await self.error_handler.handle(
            error,
            ErrorHandlingConfig(strategy=RecoveryStrategy.GRACEFUL_DEGRADE, operation="RiskManager.can_trade"),
        )
        self._record(error, recovered=result.recovered, recovery_time_ms=0)
        return RiskDecision(
            allowed=False,
            reason="Account balance validation failed - trade denied for safety",
            risk_details={"account_balance": account_balance},
        )

    def _check_daily_limits(self) -> str | None:
        limits = self.settings.daily_limits
        if self.daily_pnl_percent <= -limits.max_daily_loss_pct:
            if limits.emergency_stop_on_limit:
                self.logger.critical(
                    f"{LOG_TAG_RISK} Daily loss limit hit ({self.daily_pnl_percent:.2f}%) - new entries halted"
                )
            return (
                f"Daily loss limit exceeded: {self.daily_pnl_percent:.2f}% / "
                f"-{limits.max_daily_loss_pct}%"
            )
        if limits.max_daily_profit_pct is not None and self.daily_pnl_percent >= limits.max_daily_profit_pct:
            return (
                f"Daily profit target reached: {self.daily_pnl_percent:.2f}% / "
                f"{limits.max_daily_profit_pct}%"
            )
        return None

    def _check_loss_streak(self) -> str | None:
        stop_after = self.settings.loss_streak.stop_after_losses
        if stop_after is not None and self.consecutive_losses >= stop_after:
            return f"Consecutive loss limit exceeded: {self.consecutive_losses} / {stop_after}"
        return None

    def _check_concurrent_risk(
        self,
        open_positions: list[Position],
        balance: Decimal,
        new_size: Decimal,
    ) -> tuple[str | None, Decimal]:
        cfg = self.settings.concurrent_risk
        if not cfg.enabled:
            return None, _ZERO

        if len(open_positions) >= cfg.max_positions:
            return f"Max concurrent positions reached: {len(open_positions)} / {cfg.max_positions}", _ZERO

        existing = _ZERO
        for position in open_positions:
            notional = _finite(abs(position.quantity * position.entry_price)) if position else None
            if notional is not None:
                existing += notional
        self.total_exposure = existing

        existing_pct = existing / balance * _HUNDRED
        new_pct = new_size / balance * _HUNDRED
        total_pct = existing_pct + new_pct
        if total_pct > cfg.max_total_exposure_pct:
            return (
                f"Total exposure limit would be exceeded: {total_pct:.2f}% / {cfg.max_total_exposure_pct}%",
                total_pct,
            )
        return None, total_pct

    def _clamp_size(self, size: Decimal, balance: Decimal) -> Decimal:
        """Clamp to the USDT bounds, never above balance x max_leverage_multiplier."""
        sizing = self.settings.position_sizing
        bounded = max(sizing.min_position_size_usdt, min(size, sizing.max_position_size_usdt))
        return min(bounded, balance * sizing.max_leverage_multiplier)

    def get_streak_multiplier(self) -> Decimal:
        """Position size factor for the current loss streak."""
        streak = self.settings.loss_streak
        if self.consecutive_losses >= 4:
            return streak.reduction_after_4
        if self.consecutive_losses == 3:
            return streak.reduction_after_3
        if self.consecutive_losses == 2:
            return streak.reduction_after_2
        return _ONE

    # =========================================================================
    # Outcome tracking
    # =========================================================================

    def record_trade_result(self, trade: TradeRecord | None) -> None:
        """
        Fold a closed trade into the daily state.

        Never raises: malformed trades are logged and corrupt numeric
        contributions are skipped instead of poisoning the totals.
        """
        if trade is None:
            self.logger.warning(f"{LOG_TAG_RISK} record_trade_result called without a trade - ignored")
            return

        self._roll_day()

        pnl = _finite(getattr(trade, "realized_pnl", None))
        if pnl is None:
            self.logger.warning(
                f"{LOG_TAG_RISK} Missing or non-finite realized PnL for "
                f"{getattr(trade, 'symbol', '?')} ({getattr(trade, 'realized_pnl', None)}) - not recorded"
            )
            return

        if _finite(getattr(trade, "entry_price", None)) is None:
            self.logger.warning(
                f"{LOG_TAG_RISK} Trade {getattr(trade, 'position_id', '?')} has invalid entry price "
                f"{getattr(trade, 'entry_price', None)}"
            )

        self.daily_pnl += pnl
        self.daily_pnl_percent = self._daily_percent(self.account_balance, self.daily_pnl_percent)

        if pnl < 0:
            self.consecutive_losses += 1
            self.last_loss_time = getattr(trade, "closed_at", None) or datetime.now(UTC)
            self.logger.info(
                f"{LOG_TAG_RISK} Loss recorded: {pnl:.2f} USDT "
                f"(streak={self.consecutive_losses}, daily={self.daily_pnl:.2f})"
            )
        else:
            self.consecutive_losses = 0
            self.logger.info(f"{LOG_TAG_RISK} Win recorded: {pnl:.2f} USDT (daily={self.daily_pnl:.2f})")

    def _daily_percent(self, balance: Decimal, previous: Decimal) -> Decimal:
        """daily_pnl as % of balance, keeping `previous` when not computable."""
        if not balance or balance <= 0:
            return previous
        percent = _finite(self.daily_pnl / balance * _HUNDRED)
        return previous if percent is None else percent

    # =========================================================================
    # State
    # =========================================================================

    def _roll_day(self) -> None:
        today = datetime.now(UTC).date()
        if today != self._trading_day:
            self.logger.info(f"{LOG_TAG_RISK} New trading day {today} - resetting daily counters")
            self._trading_day = today
            self.reset_daily_counters()

    def reset_daily_counters(self) -> None:
        """Reset daily PnL (loss streak carries over across days)."""
        self.daily_pnl = _ZERO
        self.daily_pnl_percent = _ZERO

    def set_account_balance(self, balance: Decimal) -> None:
        value = _finite(balance)
        if value is None or value < 0:
            self.logger.warning(f"{LOG_TAG_RISK} Ignoring invalid account balance {balance}")
            return
        self.account_balance = value
        self.daily_pnl_percent = self._daily_percent(value, self.daily_pnl_percent)

    def get_risk_status(self) -> dict[str, Any]:
        max_loss = self.settings.daily_limits.max_daily_loss_pct
        stop_after = self.settings.loss_streak.stop_after_losses
        healthy = self.daily_pnl_percent > -max_loss and (stop_after is None or self.consecutive_losses < stop_after)
        return {
            "daily_pnl": self.daily_pnl,
            "daily_pnl_percent": self.daily_pnl_percent,
            "consecutive_losses": self.consecutive_losses,
            "last_loss_time": self.last_loss_time,
            "total_exposure": self.total_exposure,
            "max_daily_loss_percent": max_loss,
            "risk_healthy": healthy,
        }

    def _record(self, error: Exception, recovered: bool, recovery_time_ms: float | None = None) -> None:
        if self.registry is not None:
            self.registry.record(error, recovered=recovered, recovery_time_ms=recovery_time_ms)
