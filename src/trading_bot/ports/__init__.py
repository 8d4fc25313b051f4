"""Ports: interfaces to the collaborators around the trading core."""

from trading_bot.ports.exchange import ExchangePort
from trading_bot.ports.indicators import IndicatorProviderPort
from trading_bot.ports.journal import JournalPort, JournalRollback
from trading_bot.ports.notification import NotificationPort

__all__ = [
    "ExchangePort",
    "IndicatorProviderPort",
    "JournalPort",
    "JournalRollback",
    "NotificationPort",
]
