"""
Unit tests for logging setup, masking and formatters.
"""

import json
import logging
import sys

import pytest

from trading_bot.config.settings import Settings
from trading_bot.observability.logging import (
    LOG_TAG_EXIT,
    LOG_TAG_RISK,
    BotLogFormatter,
    JSONFormatter,
    SensitiveDataFilter,
    setup_logging,
)

pytestmark = pytest.mark.unit


def _record(msg: str, level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("test", level, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestSensitiveDataFilter:
    def test_masks_api_key(self):
        record = _record("api_key: abcdef1234567890abcdef")
        assert SensitiveDataFilter().filter(record) is True
        assert "abcdef1234567890abcdef" not in record.getMessage()
        assert "***MASKED***" in record.getMessage()

    def test_masks_telegram_bot_url(self):
        record = _record("POST https://api.telegram.org/bot123456:ABCdefGHIjklMNOpqrSTUvwx/sendMessage")
        SensitiveDataFilter().filter(record)
        assert "ABCdefGHI" not in record.getMessage()
        assert "/bot***MASKED***/sendMessage" in record.getMessage()

    def test_plain_message_untouched(self):
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "Position pos-1 closed at %s", ("101.5",), None)
        SensitiveDataFilter().filter(record)
        assert record.getMessage() == "Position pos-1 closed at 101.5"


class TestJSONFormatter:
    def test_only_structured_extras_exported(self):
        record = _record(
            "Exit failed",
            level=logging.ERROR,
            position_id="pos-1",
            error_code="EXCHANGE_API_ERROR",
            attempt=2,
            symbol="BTCUSDT",
        )
        record.price = "1.5"

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "ERROR"
        assert data["message"] == "Exit failed"
        assert data["position_id"] == "pos-1"
        assert data["error_code"] == "EXCHANGE_API_ERROR"
        assert data["attempt"] == 2
        assert "price" not in data

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


class TestBotLogFormatter:
    def test_tag_stripped_for_info(self):
        output = BotLogFormatter().format(_record(f"{LOG_TAG_EXIT} Closing pos-1"))
        assert "[EXIT]" in output
        assert "Closing pos-1" in output
        assert LOG_TAG_EXIT + " Closing" not in output

    def test_warning_keeps_level_label(self):
        output = BotLogFormatter().format(_record(f"{LOG_TAG_RISK} Trade denied", level=logging.WARNING))
        assert "[WARN]" in output
        assert "Trade denied" in output


class TestSetupLogging:
    def test_console_only(self, restore_root_logger):
        root = setup_logging(Settings(logging={"level": "WARNING"}))

        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, BotLogFormatter)

    def test_testing_mode_forces_debug(self, restore_root_logger):
        root = setup_logging(Settings(logging={"level": "INFO"}, testing_mode=True))
        assert root.level == logging.DEBUG

    def test_json_file_handler(self, restore_root_logger, tmp_path):
        path = tmp_path / "logs" / "bot.jsonl"
        root = setup_logging(Settings(logging={"json_enabled": True, "json_file": str(path)}))

        assert len(root.handlers) == 2
        logging.getLogger("trading_bot.test").info("hello", extra={"symbol": "ETHUSDT"})
        for handler in root.handlers:
            handler.flush()

        line = json.loads(path.read_text(encoding="utf-8").splitlines()[-1])
        assert line["message"] == "hello"
        assert line["symbol"] == "ETHUSDT"
