"""
Indicator Provider Port.

Read-only market context for the exit state machine (ATR%, volume) and
candle history for signal generation.
"""

from __future__ import annotations

from typing import Protocol

from trading_bot.domain.models import Candle, ExitIndicators


class IndicatorProviderPort(Protocol):
    """Interface for indicator providers."""

    async def get_exit_indicators(self, symbol: str) -> ExitIndicators | None:
        """Current ATR%/volume context, or None when not enough data."""
        ...

    async def get_candles(self, symbol: str, timeframe: str, limit: int = 100) -> list[Candle]:
        ...
