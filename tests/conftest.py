"""Shared fixtures for unit tests."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from trading_bot.config.settings import RetrySettings, Settings
from trading_bot.domain.models import Position, PositionSide, Signal, SignalDirection, StopLoss, TakeProfit
from trading_bot.observability.error_registry import ErrorRegistry
from trading_bot.services.error_handler import ErrorHandler


def make_position(
    side: PositionSide = PositionSide.LONG,
    entry: str = "100",
    stop: str | None = "99",
    tps: tuple[str, ...] = ("101", "102", "105"),
    quantity: str = "1",
    leverage: str = "1",
    position_id: str = "pos-1",
    symbol: str = "BTCUSDT",
) -> Position:
    """Position with a TP ladder; TP percent is the distance from entry."""
    entry_price = Decimal(entry)
    take_profits = tuple(
        TakeProfit(
            level=i + 1,
            price=Decimal(p),
            percent=abs(Decimal(p) - entry_price) / entry_price * 100,
        )
        for i, p in enumerate(tps)
    )
    stop_loss = StopLoss(price=Decimal(stop), initial_price=Decimal(stop)) if stop is not None else None
    return Position(
        position_id=position_id,
        symbol=symbol,
        side=side,
        entry_price=entry_price,
        quantity=Decimal(quantity),
        stop_loss=stop_loss,
        take_profits=take_profits,
        leverage=Decimal(leverage),
    )


def make_signal(
    direction: SignalDirection = SignalDirection.LONG,
    confidence: str = "80",
    price: str = "100",
    source: str = "EMA_ANALYZER",
    signal_type: str = "TREND_FOLLOWING",
) -> Signal:
    return Signal(
        direction=direction,
        confidence=Decimal(confidence),
        price=Decimal(price),
        source=source,
        type=signal_type,
    )


@pytest.fixture
def settings() -> Settings:
    """Default settings, independent of config.yaml."""
    return Settings(telegram={"enabled": False})


@pytest.fixture
def registry() -> ErrorRegistry:
    return ErrorRegistry()


@pytest.fixture
def sleep_calls() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleep_calls):
    """Records requested sleeps (seconds) instead of waiting."""

    async def _sleep(seconds: float) -> None:
        sleep_calls.append(seconds)

    return _sleep


@pytest.fixture
def error_handler(fake_sleep) -> ErrorHandler:
    return ErrorHandler(log=MagicMock(), sleep=fake_sleep)


@pytest.fixture
def fast_retry() -> RetrySettings:
    return RetrySettings(max_attempts=3, initial_delay_ms=100, backoff_multiplier=2.0, max_delay_ms=10_000)


@pytest.fixture
def mock_exchange():
    """ExchangePort double with all calls succeeding."""
    exchange = MagicMock()
    exchange.close_position = AsyncMock(return_value=None)
    exchange.update_stop_loss = AsyncMock(return_value=None)
    exchange.cancel_all_conditional_orders = AsyncMock(return_value=None)
    exchange.open_position = AsyncMock()
    exchange.get_candles = AsyncMock(return_value=[])
    return exchange


@pytest.fixture
def mock_journal():
    journal = MagicMock()
    journal.record_trade_close = MagicMock(return_value=MagicMock(name="rollback_handle"))
    return journal


@pytest.fixture
def mock_notifier():
    notifier = MagicMock()
    notifier.send_alert = AsyncMock(return_value=True)
    notifier.send_message = AsyncMock(return_value=True)
    return notifier
