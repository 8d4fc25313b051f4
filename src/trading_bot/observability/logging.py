"""
Structured logging setup.

Provides both text and JSON logging with sensitive data masking.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from trading_bot.config.settings import Settings

# =============================================================================
# Constants
# =============================================================================

LOG_TAG_TRADE = "[TRADE]"
LOG_TAG_RISK = "[RISK]"
LOG_TAG_EXIT = "[EXIT]"
LOG_TAG_HEALTH = "[HEALTH]"

# Structured fields copied from `extra=` into JSON lines
STRUCTURED_FIELDS = (
    "position_id",
    "symbol",
    "error_code",
    "error_domain",
    "severity",
    "strategy",
    "attempt",
)

__all__ = [
    "setup_logging",
    "get_logger",
    "SensitiveDataFilter",
    "JSONFormatter",
    "BotLogFormatter",
    "LOG_TAG_TRADE",
    "LOG_TAG_RISK",
    "LOG_TAG_EXIT",
    "LOG_TAG_HEALTH",
]


class SensitiveDataFilter(logging.Filter):
    """Filter that masks secrets (bot tokens, API keys) in log messages."""

    SENSITIVE_PATTERNS = [
        (re.compile(r"(api[_-]?key['\"]?:\s*['\"]?)([a-zA-Z0-9]{16,})(['\"]?)", re.IGNORECASE), r"\1***MASKED***\3"),
        (re.compile(r"(secret['\"]?:\s*['\"]?)([a-zA-Z0-9]{16,})(['\"]?)", re.IGNORECASE), r"\1***MASKED***\3"),
        (re.compile(r"(token['\"]?:\s*['\"]?)([a-zA-Z0-9:_-]{16,})(['\"]?)", re.IGNORECASE), r"\1***MASKED***\3"),
        # Telegram bot URLs embed the token in the path
        (re.compile(r"(/bot)(\d+:[A-Za-z0-9_-]{20,})"), r"\1***MASKED***"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        original_msg = str(record.getMessage())
        masked_msg = original_msg

        for pattern, replacement in self.SENSITIVE_PATTERNS:
            masked_msg = pattern.sub(replacement, masked_msg)

        if masked_msg != original_msg:
            record.msg = masked_msg
            record.args = ()

        return True


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder for Decimal, datetime and enums."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "__dict__"):
            return str(obj)
        return super().default(obj)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in STRUCTURED_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, cls=DecimalEncoder)


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """
    Set up console logging and, if enabled, a rotating JSON-lines file.

    Returns the root logger.
    """
    if settings is None:
        from trading_bot.config.settings import get_settings

        settings = get_settings()

    level = getattr(logging, settings.logging.level.upper(), logging.INFO)
    if settings.testing_mode and level > logging.DEBUG:
        level = logging.DEBUG

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    sensitive_filter = SensitiveDataFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(BotLogFormatter())
    console_handler.addFilter(sensitive_filter)
    root_logger.addHandler(console_handler)

    if settings.logging.json_enabled:
        json_path = Path(settings.logging.json_file)
        json_path.parent.mkdir(parents=True, exist_ok=True)

        max_bytes = settings.logging.json_max_bytes
        backup_count = settings.logging.json_backup_count
        if max_bytes > 0 and backup_count > 0:
            json_handler = RotatingFileHandler(
                json_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        else:
            json_handler = logging.FileHandler(json_path, encoding="utf-8")
        json_handler.setLevel(level)
        json_handler.setFormatter(JSONFormatter())
        json_handler.addFilter(sensitive_filter)
        root_logger.addHandler(json_handler)

    # Reduce noise from verbose libraries
    for lib in ["asyncio", "aiohttp", "urllib3"]:
        logging.getLogger(lib).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


class BotLogFormatter(logging.Formatter):
    """
    Console formatter with colors keyed on level and message tags.

    Special tags:
    - [TRADE]: Cyan
    - [EXIT]: Magenta
    - [RISK]: Yellow
    - [HEALTH]: Blue
    """

    RESET = "\033[0m"
    GREY = "\033[90m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BOLD_RED = "\033[1;91m"
    CYAN = "\033[96m"
    MAGENTA = "\033[95m"
    BLUE = "\033[94m"

    _TAGS = (
        (LOG_TAG_TRADE, "TRADE"),
        (LOG_TAG_EXIT, "EXIT"),
        (LOG_TAG_RISK, "RISK"),
        (LOG_TAG_HEALTH, "HEALTH"),
    )

    def __init__(self):
        super().__init__(datefmt="%H:%M:%S")
        self._formatters: dict[str, logging.Formatter] = {
            "DEBUG": self._make(self.GREY, "DEBUG", color_message=True),
            "INFO": self._make(self.GREEN, "INFO"),
            "WARNING": self._make(self.YELLOW, "WARN", color_message=True),
            "ERROR": self._make(self.RED, "ERROR", color_message=True),
            "CRITICAL": self._make(self.BOLD_RED, "CRITICAL", color_message=True),
            "TRADE": self._make(self.CYAN, "TRADE"),
            "EXIT": self._make(self.MAGENTA, "EXIT"),
            "RISK": self._make(self.YELLOW, "RISK"),
            "HEALTH": self._make(self.BLUE, "HEALTH"),
        }

    def _make(self, color: str, label: str, color_message: bool = False) -> logging.Formatter:
        if color_message:
            fmt = f"{color}%(asctime)s [{label}] %(message)s{self.RESET}"
        else:
            fmt = f"{color}%(asctime)s [{label}]{self.RESET} %(message)s"
        return logging.Formatter(fmt, datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()

        # Warnings and errors keep their level color even when tagged
        if record.levelno < logging.WARNING:
            for tag, key in self._TAGS:
                if tag in msg:
                    record.msg = msg.replace(tag, "").strip()
                    record.args = ()
                    return self._formatters[key].format(record)

        formatter_key = record.levelname if record.levelname in self._formatters else "INFO"
        return self._formatters[formatter_key].format(record)
