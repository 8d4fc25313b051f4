"""
Exchange Port: Abstract interface for exchange adapters.

The interface uses only domain types - no SDK types leak through.
Implementations raise TradingError subclasses from the EXCHANGE/ORDER
domains (timeouts, rejections, rate limits); callers wrap these calls
with the ErrorHandler.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from decimal import Decimal

from trading_bot.domain.models import Candle, Position, PositionSide, TakeProfit


class ExchangePort(ABC):
    """
    Abstract interface for exchange operations.

    All methods are async and use domain types.
    """

    # =========================================================================
    # Orders / Positions
    # =========================================================================

    @abstractmethod
    async def open_position(
        self,
        symbol: str,
        side: PositionSide,
        quantity: Decimal,
        leverage: Decimal,
        stop_loss: Decimal,
        take_profits: Sequence[TakeProfit] = (),
    ) -> Position:
        """Open a position with its protective orders attached."""
        ...

    @abstractmethod
    async def close_position(self, position_id: str, percentage: Decimal) -> None:
        """
        Close `percentage` (0-100] of a position at market.

        Raises when the exchange rejects the close; messages containing
        "position is zero" or "reduce-only" mean it is already flat.
        """
        ...

    @abstractmethod
    async def update_stop_loss(self, position_id: str, new_price: Decimal) -> None:
        """Move the position's stop-loss order to `new_price`."""
        ...

    @abstractmethod
    async def cancel_all_conditional_orders(self, symbol: str | None = None) -> None:
        """Cancel resting SL/TP orders (all symbols when None)."""
        ...

    # =========================================================================
    # Market Data
    # =========================================================================

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str, limit: int = 100) -> list[Candle]:
        """Most recent candles, oldest first."""
        ...
