"""
Journal Port.

Defines the interface for the trade journal. Writes are synchronous and
return a handle that undoes the write when a later step of the close
flow needs to be compensated.
"""

from __future__ import annotations

from typing import Protocol

from trading_bot.domain.models import TradeRecord


class JournalRollback(Protocol):
    """Handle returned by a journal write."""

    def rollback(self) -> None:
        """Restore the journal entry to its state before the write."""
        ...


class JournalPort(Protocol):
    """Interface for trade journal adapters."""

    def record_trade_close(self, trade: TradeRecord) -> JournalRollback:
        """
        Record a closed trade.

        Raises:
            JournalWriteError: the entry could not be persisted.
        """
        ...
