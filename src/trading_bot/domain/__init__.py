"""
Domain layer: pure decision logic and types.

No I/O happens here; everything returns new values.
"""

from trading_bot.domain.entry import evaluate_entry
from trading_bot.domain.errors import ErrorDomain, ErrorSeverity, TradingError
from trading_bot.domain.exits import evaluate_exit
from trading_bot.domain.result import Err, Ok, Result

__all__ = [
    "ErrorDomain",
    "ErrorSeverity",
    "Err",
    "Ok",
    "Result",
    "TradingError",
    "evaluate_entry",
    "evaluate_exit",
]
