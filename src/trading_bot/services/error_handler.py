"""
Error Handler: recovery strategy engine.

Normalizes anything raised into a TradingError and applies the recovery
strategy configured at the call site:

- RETRY: re-run transient failures with exponential backoff
- FALLBACK: signal the caller to take its alternate path
- GRACEFUL_DEGRADE: continue with reduced functionality
- SKIP: cancel the operation and carry on
- THROW: report failure; the caller re-raises

The handler does not record telemetry itself. Callers record each handled
error into the ErrorRegistry with the outcome and elapsed time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from trading_bot.config.settings import RetrySettings
from trading_bot.domain.errors import ExchangeRateLimitError, TradingError, UnknownTradingError
from trading_bot.domain.result import Err, Ok, Result
from trading_bot.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RecoveryStrategy(str, Enum):
    """How a failure is recovered from at a given call site."""

    RETRY = "RETRY"
    FALLBACK = "FALLBACK"
    GRACEFUL_DEGRADE = "GRACEFUL_DEGRADE"
    SKIP = "SKIP"
    THROW = "THROW"

    @classmethod
    def parse(cls, value: RecoveryStrategy | str | None) -> RecoveryStrategy:
        """Unknown or missing strategies resolve to THROW."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.THROW


@dataclass(slots=True)
class ErrorHandlingConfig:
    """Per call site recovery configuration."""

    strategy: RecoveryStrategy | str = RecoveryStrategy.THROW
    retry: RetrySettings = field(default_factory=RetrySettings)
    operation: str = "operation"
    context: dict[str, Any] = field(default_factory=dict)

    # attempt -> delay in ms, replaces the exponential formula
    custom_backoff: Callable[[int], float] | None = None
    # Alternate implementation used by execute() under FALLBACK
    fallback: Callable[[], Awaitable[Any]] | None = None

    on_retry: Callable[[int, TradingError, float], None] | None = None
    on_recover: Callable[[RecoveryStrategy, int], None] | None = None
    on_failure: Callable[[TradingError, int], None] | None = None


@dataclass(frozen=True, slots=True)
class ErrorHandlingResult:
    """Outcome of handling one error."""

    success: bool
    recovered: bool
    attempts: int
    message: str
    strategy: RecoveryStrategy
    error: TradingError | None = None


def normalize_error(value: Any) -> TradingError:
    """Turn any raised value into a TradingError, keeping the original."""
    if isinstance(value, TradingError):
        return value
    if isinstance(value, BaseException):
        return UnknownTradingError(
            str(value) or type(value).__name__,
            original_error=value,
            context={"original_type": type(value).__name__},
        )
    return UnknownTradingError(
        f"Unknown error: {value!r}",
        context={"original_value": repr(value)},
    )


def calculate_delay(
    attempt: int,
    error: TradingError,
    retry: RetrySettings,
    custom_backoff: Callable[[int], float] | None = None,
) -> float:
    """
    Delay in ms before the retry following `attempt` (1-based).

    A rate-limit error's own retry-after wins on the first attempt.
    """
    if isinstance(error, ExchangeRateLimitError) and attempt == 1:
        return float(min(error.retry_after_ms, retry.max_delay_ms))
    if custom_backoff is not None:
        return float(custom_backoff(attempt))
    delay = retry.initial_delay_ms * retry.backoff_multiplier ** (attempt - 1)
    return float(min(delay, retry.max_delay_ms))


class ErrorHandler:
    """Dispatches normalized errors to their recovery strategy."""

    def __init__(
        self,
        *,
        log: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.logger = log or logger
        self._sleep = sleep
        self._strategies: dict[
            RecoveryStrategy, Callable[[TradingError, ErrorHandlingConfig], ErrorHandlingResult]
        ] = {
            RecoveryStrategy.FALLBACK: self._fallback,
            RecoveryStrategy.GRACEFUL_DEGRADE: self._degrade,
            RecoveryStrategy.SKIP: self._skip,
            RecoveryStrategy.THROW: self._throw,
        }

    def get_logger(self) -> logging.Logger:
        return self.logger

    # =========================================================================
    # Public API
    # =========================================================================

    async def handle(
        self,
        error: Any,
        config: ErrorHandlingConfig | None = None,
        operation: Callable[[], Awaitable[Any]] | None = None,
    ) -> ErrorHandlingResult:
        """
        Apply the configured strategy to an error that already happened.

        Under RETRY, `operation` is re-run with backoff (the failure passed
        in counts as attempt 1). Without an operation there is nothing to
        re-run and the result is non-recovered.
        """
        config = config or ErrorHandlingConfig()
        trading_error = normalize_error(error)
        strategy = RecoveryStrategy.parse(config.strategy)

        if strategy == RecoveryStrategy.RETRY:
            return await self._retry(trading_error, config, operation)
        return self._strategies[strategy](trading_error, config)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        config: ErrorHandlingConfig | None = None,
    ) -> Result[T]:
        """
        Run `operation` under the configured strategy.

        Returns Ok(value) on success, Ok(fallback value or None) when the
        failure was absorbed, Err(error) otherwise.
        """
        config = config or ErrorHandlingConfig()
        strategy = RecoveryStrategy.parse(config.strategy)

        if strategy == RecoveryStrategy.RETRY:
            result, _ = await self._execute_with_retry(operation, config)
            return result

        try:
            return Ok(await operation())
        except Exception as e:
            outcome = self._strategies[strategy](normalize_error(e), config)

        if not outcome.success:
            return Err(outcome.error)
        if strategy == RecoveryStrategy.FALLBACK and config.fallback is not None:
            try:
                return Ok(await config.fallback())
            except Exception as e:
                fallback_error = normalize_error(e)
                self.logger.error(
                    f"[{config.operation}] Fallback failed: {fallback_error.message}",
                    extra=self._extra(fallback_error, strategy),
                )
                return Err(fallback_error)
        return Ok(None)

    def execute_sync(self, operation: Callable[[], T], config: ErrorHandlingConfig | None = None) -> Result[T]:
        """Synchronous execute(); RETRY degrades to a single attempt."""
        config = config or ErrorHandlingConfig()
        strategy = RecoveryStrategy.parse(config.strategy)
        if strategy == RecoveryStrategy.RETRY:
            strategy = RecoveryStrategy.THROW

        try:
            return Ok(operation())
        except Exception as e:
            outcome = self._strategies[strategy](normalize_error(e), config)
        return Ok(None) if outcome.success else Err(outcome.error)

    async def wrap(self, operation: Callable[[], Awaitable[T]], config: ErrorHandlingConfig | None = None) -> T | None:
        """Run `operation`; absorbed failures return None, others raise the normalized error."""
        return (await self.execute(operation, config)).unwrap()

    def wrap_sync(self, operation: Callable[[], T], config: ErrorHandlingConfig | None = None) -> T | None:
        """Synchronous wrap()."""
        return self.execute_sync(operation, config).unwrap()

    # =========================================================================
    # Strategies
    # =========================================================================

    async def _retry(
        self,
        error: TradingError,
        config: ErrorHandlingConfig,
        operation: Callable[[], Awaitable[Any]] | None,
    ) -> ErrorHandlingResult:
        if not error.retryable:
            self.logger.warning(
                f"[{config.operation}] Error not retryable: [{error.code}] {error.message}",
                extra=self._extra(error, RecoveryStrategy.RETRY),
            )
            return ErrorHandlingResult(
                success=False,
                recovered=False,
                attempts=1,
                message="Error not retryable",
                strategy=RecoveryStrategy.RETRY,
                error=error,
            )

        if operation is None:
            return ErrorHandlingResult(
                success=False,
                recovered=False,
                attempts=1,
                message="No operation to retry",
                strategy=RecoveryStrategy.RETRY,
                error=error,
            )

        result, attempts = await self._execute_with_retry(operation, config, first_error=error)
        if isinstance(result, Ok):
            return ErrorHandlingResult(
                success=True,
                recovered=True,
                attempts=attempts,
                message=f"Recovered after {attempts - 1} retries",
                strategy=RecoveryStrategy.RETRY,
            )
        return ErrorHandlingResult(
            success=False,
            recovered=False,
            attempts=attempts,
            message=f"Failed after {attempts} attempts",
            strategy=RecoveryStrategy.RETRY,
            error=result.error,
        )

    def _fallback(self, error: TradingError, config: ErrorHandlingConfig) -> ErrorHandlingResult:
        self.logger.info(
            f"[{config.operation}] Fallback strategy activated: [{error.code}] {error.message}",
            extra=self._extra(error, RecoveryStrategy.FALLBACK),
        )
        return self._recovered(RecoveryStrategy.FALLBACK, config, "Fallback strategy activated")

    def _degrade(self, error: TradingError, config: ErrorHandlingConfig) -> ErrorHandlingResult:
        self.logger.warning(
            f"[{config.operation}] Graceful degradation activated: [{error.code}] {error.message}",
            extra=self._extra(error, RecoveryStrategy.GRACEFUL_DEGRADE),
        )
        return self._recovered(RecoveryStrategy.GRACEFUL_DEGRADE, config, "Graceful degradation activated")

    def _skip(self, error: TradingError, config: ErrorHandlingConfig) -> ErrorHandlingResult:
        self.logger.warning(
            f"[{config.operation}] Error skipped, operation cancelled: [{error.code}] {error.message}",
            extra=self._extra(error, RecoveryStrategy.SKIP),
        )
        return self._recovered(RecoveryStrategy.SKIP, config, "Error skipped, operation cancelled")

    def _throw(self, error: TradingError, config: ErrorHandlingConfig) -> ErrorHandlingResult:
        self.logger.error(
            f"[{config.operation}] {error.to_diagnostic_string()}",
            extra=self._extra(error, RecoveryStrategy.THROW),
        )
        self._callback(config.on_failure, error, 1)
        return ErrorHandlingResult(
            success=False,
            recovered=False,
            attempts=1,
            message=error.message,
            strategy=RecoveryStrategy.THROW,
            error=error,
        )

    def _recovered(
        self,
        strategy: RecoveryStrategy,
        config: ErrorHandlingConfig,
        message: str,
    ) -> ErrorHandlingResult:
        self._callback(config.on_recover, strategy, 1)
        return ErrorHandlingResult(
            success=True,
            recovered=True,
            attempts=1,
            message=message,
            strategy=strategy,
        )

    # =========================================================================
    # Retry loop
    # =========================================================================

    async def _execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        config: ErrorHandlingConfig,
        first_error: TradingError | None = None,
    ) -> tuple[Result[T], int]:
        retry = config.retry
        attempt = 1
        last_error = first_error

        while True:
            if last_error is None:
                try:
                    value = await operation()
                except Exception as e:
                    last_error = normalize_error(e)
                else:
                    if attempt > 1:
                        self._callback(config.on_recover, RecoveryStrategy.RETRY, attempt - 1)
                        self.logger.info(f"[{config.operation}] Succeeded after {attempt - 1} retries")
                    return Ok(value), attempt

            if attempt >= retry.max_attempts or not last_error.retryable:
                self._callback(config.on_failure, last_error, attempt)
                self.logger.error(
                    f"[{config.operation}] Failed after {attempt} attempts: "
                    f"[{last_error.code}] {last_error.message} (retryable={last_error.retryable})",
                    extra=self._extra(last_error, RecoveryStrategy.RETRY, attempt),
                )
                return Err(last_error), attempt

            delay_ms = calculate_delay(attempt, last_error, retry, config.custom_backoff)
            self._callback(config.on_retry, attempt, last_error, delay_ms)
            self.logger.warning(
                f"[{config.operation}] Retrying in {delay_ms:.0f}ms "
                f"(attempt {attempt}/{retry.max_attempts}): [{last_error.code}] {last_error.message}",
                extra=self._extra(last_error, RecoveryStrategy.RETRY, attempt),
            )
            await self._sleep(delay_ms / 1000)

            attempt += 1
            last_error = None

    # =========================================================================
    # Helpers
    # =========================================================================

    def _callback(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        """Invoke a user callback; its failures are logged, never propagated."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.error(f"Error handler callback {getattr(callback, '__name__', callback)!s} failed: {e}")

    @staticmethod
    def _extra(error: TradingError, strategy: RecoveryStrategy, attempt: int | None = None) -> dict[str, Any]:
        extra = {
            "error_code": error.code,
            "error_domain": error.domain.value,
            "severity": error.severity.value,
            "strategy": strategy.value,
        }
        if attempt is not None:
            extra["attempt"] = attempt
        return extra

