"""
Domain Error Taxonomy.

Every error raised by the trading core is a TradingError carrying a code,
a domain and a severity. Recoverability and retryability are derived from
those, never set by callers.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class ErrorDomain(str, Enum):
    """Subsystem an error originates from."""

    TRADING = "TRADING"
    EXCHANGE = "EXCHANGE"
    POSITION = "POSITION"
    ORDER = "ORDER"
    CONFIGURATION = "CONFIGURATION"
    INTERNAL = "INTERNAL"
    PERFORMANCE = "PERFORMANCE"
    PERSISTENCE = "PERSISTENCE"


class ErrorSeverity(str, Enum):
    """How urgently an error must be dealt with."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# Transient failures that are safe to retry automatically
RETRYABLE_CODES: frozenset[str] = frozenset(
    {
        "EXCHANGE_API_ERROR",
        "EXCHANGE_CONNECTION_ERROR",
        "EXCHANGE_RATE_LIMIT",
        "ORDER_TIMEOUT",
        "ORDER_RETRY",
        "TEMPORARY_FAILURE",
    }
)


class TradingError(Exception):
    """
    Base class for all trading errors.

    Subclasses only declare `code`, `domain` and `severity`; instances are
    treated as immutable once constructed.
    """

    code: str = "TRADING_ERROR"
    domain: ErrorDomain = ErrorDomain.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: BaseException | None = None,
        timestamp: datetime | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.original_error = original_error
        self.timestamp = timestamp or datetime.now(UTC)
        if original_error is not None:
            self.__cause__ = original_error

    @property
    def recoverable(self) -> bool:
        """Everything except CRITICAL errors can be recovered from."""
        return self.severity != ErrorSeverity.CRITICAL

    @property
    def retryable(self) -> bool:
        """Whether the error code is on the transient allow-list."""
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for logging and telemetry."""
        return {
            "name": type(self).__name__,
            "code": self.code,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "original_error": str(self.original_error) if self.original_error is not None else None,
        }

    def to_diagnostic_string(self) -> str:
        """Multi-line human readable description used in error logs."""
        lines = [
            f"[{self.code}] {self.message}",
            f"Domain: {self.domain.value} | Severity: {self.severity.value}",
        ]
        if self.context:
            context = ", ".join(f"{k}={v}" for k, v in self.context.items())
            lines.append(f"Context: {context}")
        if self.original_error is not None:
            lines.append(f"Caused by: {self.original_error}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class UnknownTradingError(TradingError):
    """Wrapper for anything thrown that is not already a TradingError."""

    code = "UNKNOWN_ERROR"
    domain = ErrorDomain.INTERNAL
    severity = ErrorSeverity.MEDIUM


# =============================================================================
# Trading Errors
# =============================================================================


class EntryValidationError(TradingError):
    """Entry signal or preconditions invalid."""

    code = "ENTRY_VALIDATION_ERROR"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.MEDIUM


class ExitExecutionError(TradingError):
    """Exit could not be executed."""

    code = "EXIT_EXECUTION_ERROR"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.HIGH


class StrategyExecutionError(TradingError):
    """Strategy evaluation failed."""

    code = "STRATEGY_EXECUTION_ERROR"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.MEDIUM


class RiskLimitExceededError(TradingError):
    """A configured risk limit was breached."""

    code = "RISK_LIMIT_EXCEEDED"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        *,
        limit_name: str,
        current: Decimal,
        limit: Decimal,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.limit_name = limit_name
        self.current = current
        self.limit = limit
        self.context.update({"limit_name": limit_name, "current": str(current), "limit": str(limit)})


class InsufficientBalanceError(TradingError):
    """Not enough balance to trade. Halts new entries."""

    code = "INSUFFICIENT_BALANCE"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        *,
        required: Decimal,
        available: Decimal,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.required = required
        self.available = available
        self.context.update({"required": str(required), "available": str(available)})


class RiskValidationError(TradingError):
    """Input to the risk manager violates its contract."""

    code = "RISK_VALIDATION_ERROR"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.MEDIUM


class RiskCalculationError(TradingError):
    """Risk metric could not be computed."""

    code = "RISK_CALCULATION_ERROR"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.MEDIUM


class InsufficientAccountBalanceError(TradingError):
    """Account balance is zero, negative or unknown."""

    code = "INSUFFICIENT_ACCOUNT_BALANCE_ERROR"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.HIGH


class TradeRecordValidationError(TradingError):
    """Trade record is malformed."""

    code = "TRADE_RECORD_VALIDATION_ERROR"
    domain = ErrorDomain.TRADING
    severity = ErrorSeverity.HIGH


# =============================================================================
# Exchange Errors
# =============================================================================


class ExchangeConnectionError(TradingError):
    """Exchange unreachable."""

    code = "EXCHANGE_CONNECTION_ERROR"
    domain = ErrorDomain.EXCHANGE
    severity = ErrorSeverity.HIGH


class ExchangeRateLimitError(TradingError):
    """Exchange throttled the request."""

    code = "EXCHANGE_RATE_LIMIT"
    domain = ErrorDomain.EXCHANGE
    severity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, *, retry_after_ms: int = 60_000, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms
        self.context["retry_after_ms"] = retry_after_ms


class ExchangeAPIError(TradingError):
    """Exchange returned an error response."""

    code = "EXCHANGE_API_ERROR"
    domain = ErrorDomain.EXCHANGE
    severity = ErrorSeverity.HIGH


class OrderRejectedError(TradingError):
    """Order rejected by exchange."""

    code = "ORDER_REJECTED"
    domain = ErrorDomain.EXCHANGE
    severity = ErrorSeverity.HIGH


class WebSocketConnectionError(TradingError):
    """WebSocket stream dropped or could not connect."""

    code = "WEBSOCKET_CONNECTION_ERROR"
    domain = ErrorDomain.EXCHANGE
    severity = ErrorSeverity.HIGH


class WebSocketAuthenticationError(TradingError):
    """WebSocket login rejected."""

    code = "WEBSOCKET_AUTH_ERROR"
    domain = ErrorDomain.EXCHANGE
    severity = ErrorSeverity.HIGH


class WebSocketSubscriptionError(TradingError):
    """WebSocket channel subscription failed."""

    code = "WEBSOCKET_SUBSCRIPTION_ERROR"
    domain = ErrorDomain.EXCHANGE
    severity = ErrorSeverity.MEDIUM


# =============================================================================
# Position Errors
# =============================================================================


class PositionNotFoundError(TradingError):
    """Position does not exist (anymore)."""

    code = "POSITION_NOT_FOUND"
    domain = ErrorDomain.POSITION
    severity = ErrorSeverity.HIGH


class PositionStateError(TradingError):
    """Position is in the wrong lifecycle state for the operation."""

    code = "POSITION_STATE_ERROR"
    domain = ErrorDomain.POSITION
    severity = ErrorSeverity.HIGH


class PositionSizingError(TradingError):
    """Position size could not be determined."""

    code = "POSITION_SIZING_ERROR"
    domain = ErrorDomain.POSITION
    severity = ErrorSeverity.MEDIUM


class LeverageValidationError(TradingError):
    """Leverage outside allowed bounds."""

    code = "LEVERAGE_VALIDATION_ERROR"
    domain = ErrorDomain.POSITION
    severity = ErrorSeverity.MEDIUM


# =============================================================================
# Order Errors
# =============================================================================


class OrderTimeoutError(TradingError):
    """Order did not complete in time."""

    code = "ORDER_TIMEOUT"
    domain = ErrorDomain.ORDER
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, *, timeout_ms: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout_ms = timeout_ms
        self.context["timeout_ms"] = timeout_ms


class OrderSlippageError(TradingError):
    """Fill price deviated too far from the expected price."""

    code = "ORDER_SLIPPAGE_ERROR"
    domain = ErrorDomain.ORDER
    severity = ErrorSeverity.MEDIUM


class OrderCancellationError(TradingError):
    """Order could not be cancelled."""

    code = "ORDER_CANCELLATION_ERROR"
    domain = ErrorDomain.ORDER
    severity = ErrorSeverity.MEDIUM


class OrderValidationError(TradingError):
    """Order parameters invalid."""

    code = "ORDER_VALIDATION_ERROR"
    domain = ErrorDomain.ORDER
    severity = ErrorSeverity.MEDIUM


# =============================================================================
# Persistence Errors
# =============================================================================


class JournalReadError(TradingError):
    """Trade journal could not be read."""

    code = "JOURNAL_READ_ERROR"
    domain = ErrorDomain.PERSISTENCE
    severity = ErrorSeverity.MEDIUM


class JournalWriteError(TradingError):
    """Trade journal could not be written."""

    code = "JOURNAL_WRITE_ERROR"
    domain = ErrorDomain.PERSISTENCE
    severity = ErrorSeverity.HIGH


class CSVExportError(TradingError):
    """CSV export failed."""

    code = "CSV_EXPORT_ERROR"
    domain = ErrorDomain.PERSISTENCE
    severity = ErrorSeverity.LOW


# =============================================================================
# Configuration / Performance Errors
# =============================================================================


class ConfigurationError(TradingError):
    """Invalid configuration. Fails startup."""

    code = "CONFIGURATION_ERROR"
    domain = ErrorDomain.CONFIGURATION
    severity = ErrorSeverity.CRITICAL


class PerformanceError(TradingError):
    """Operation slower than expected. Informational."""

    code = "PERFORMANCE_ERROR"
    domain = ErrorDomain.PERFORMANCE
    severity = ErrorSeverity.LOW
