"""
Result type for expected business outcomes.

`Ok` and `Err` replace exceptions where failure is a normal outcome
(a rejected trade, a skipped notification). Contract violations still raise.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from trading_bot.domain.errors import TradingError, UnknownTradingError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result carrying a value."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    @property
    def err(self) -> bool:
        return False

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def map(self, fn: Callable[[T], U]) -> Result[U]:
        try:
            return Ok(fn(self.value))
        except Exception as e:
            return Err(_as_trading_error(e, "Transformation failed"))

    def map_err(self, fn: Callable[[TradingError], TradingError]) -> Result[T]:
        return self

    def flat_map(self, fn: Callable[[T], Result[U]]) -> Result[U]:
        try:
            return fn(self.value)
        except Exception as e:
            return Err(_as_trading_error(e, "FlatMap failed"))

    def match(
        self,
        ok_fn: Callable[[T], U],
        err_fn: Callable[[TradingError], U] | None = None,
    ) -> U:
        return ok_fn(self.value)

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def expect(self, message: str) -> T:
        return self.value

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}


@dataclass(frozen=True, slots=True)
class Err:
    """Failed result carrying a TradingError."""

    error: TradingError

    @property
    def ok(self) -> bool:
        return False

    @property
    def err(self) -> bool:
        return True

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def map(self, fn: Callable[[Any], Any]) -> Err:
        return self

    def map_err(self, fn: Callable[[TradingError], TradingError]) -> Result[Any]:
        try:
            return Err(fn(self.error))
        except Exception as e:
            return Err(_as_trading_error(e, "Transformation failed"))

    def flat_map(self, fn: Callable[[Any], Any]) -> Err:
        return self

    def match(
        self,
        ok_fn: Callable[[Any], U],
        err_fn: Callable[[TradingError], U] | None = None,
    ) -> U:
        if err_fn is None:
            raise self.error
        return err_fn(self.error)

    def unwrap(self) -> Any:
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def expect(self, message: str) -> Any:
        raise UnknownTradingError(message, original_error=self.error)

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error.to_dict()}


Result = Ok[T] | Err


def _as_trading_error(exc: BaseException, message: str) -> TradingError:
    if isinstance(exc, TradingError):
        return exc
    return UnknownTradingError(message, original_error=exc)


def ok(value: T = None) -> Ok[T]:
    """Shorthand for Ok(value)."""
    return Ok(value)


def err(error: TradingError) -> Err:
    """Shorthand for Err(error)."""
    return Err(error)


async def try_async(fn: Callable[[], Awaitable[T]]) -> Result[T]:
    """Await fn() and capture any exception as Err."""
    try:
        return Ok(await fn())
    except Exception as e:
        return Err(_as_trading_error(e, "Async operation failed"))


def try_sync(fn: Callable[[], T]) -> Result[T]:
    """Call fn() and capture any exception as Err."""
    try:
        return Ok(fn())
    except Exception as e:
        return Err(_as_trading_error(e, "Sync operation failed"))


def combine(results: Iterable[Result[T]]) -> Result[list[T]]:
    """Collect all values, or return the first Err."""
    values: list[T] = []
    for result in results:
        if isinstance(result, Err):
            return result
        values.append(result.value)
    return Ok(values)


def combine_all(results: Iterable[Result[T]]) -> Result[list[T]]:
    """Collect all values, or report every failure in one Err."""
    values: list[T] = []
    errors: list[TradingError] = []
    for result in results:
        if isinstance(result, Err):
            errors.append(result.error)
        else:
            values.append(result.value)

    if errors:
        return Err(
            UnknownTradingError(
                f"{len(errors)} operations failed",
                context={"errors": [e.code for e in errors], "count": len(errors)},
            )
        )
    return Ok(values)
