"""
Unit tests for the error telemetry registry.
"""

from datetime import timedelta

import pytest

from trading_bot.config.settings import ErrorRegistrySettings
from trading_bot.domain.errors import (
    ConfigurationError,
    ErrorDomain,
    ErrorSeverity,
    ExchangeAPIError,
    ExchangeConnectionError,
    JournalWriteError,
)
from trading_bot.observability.error_registry import ErrorRegistry, get_error_registry

pytestmark = pytest.mark.unit


class TestRecording:
    def test_counts_per_code_and_domain(self, registry):
        registry.record(ExchangeAPIError("a"))
        registry.record(ExchangeAPIError("b"), recovered=True, recovery_time_ms=100)
        stats = registry.record(ExchangeAPIError("c"), recovered=True, recovery_time_ms=300)

        assert stats.count == 3
        assert stats.recovered_count == 2
        assert stats.recovery_rate == pytest.approx(2 / 3)
        assert stats.average_recovery_time_ms == pytest.approx(200)
        assert len(registry.get_stats()) == 1

    def test_recovery_without_time_keeps_average(self, registry):
        registry.record(JournalWriteError("x"), recovered=True, recovery_time_ms=50)
        stats = registry.record(JournalWriteError("y"), recovered=True)
        assert stats.average_recovery_time_ms == pytest.approx(50)

    def test_first_and_last_occurrence(self, registry):
        first = registry.record(ExchangeAPIError("a"))
        started = first.first_occurrence
        stats = registry.record(ExchangeAPIError("b"))
        assert stats.first_occurrence == started
        assert stats.last_occurrence >= started

    def test_eviction_drops_oldest(self):
        registry = ErrorRegistry(max_tracked_errors=2)
        registry.record(ExchangeAPIError("a"))
        registry.record(ExchangeConnectionError("b"))
        registry.record(JournalWriteError("c"))

        codes = {s.code for s in registry.get_stats()}
        assert codes == {"EXCHANGE_CONNECTION_ERROR", "JOURNAL_WRITE_ERROR"}


class TestQueries:
    def test_filters(self, registry):
        registry.record(ExchangeAPIError("a"))
        registry.record(JournalWriteError("b"), recovered=True)
        registry.record(ConfigurationError("c"))

        assert [s.code for s in registry.get_stats_by_code("JOURNAL_WRITE_ERROR")] == ["JOURNAL_WRITE_ERROR"]
        assert len(registry.get_stats_by_domain(ErrorDomain.EXCHANGE)) == 1
        assert len(registry.get_stats_by_severity(ErrorSeverity.CRITICAL)) == 1
        assert {s.code for s in registry.get_critical_errors()} == {"EXCHANGE_API_ERROR", "CONFIGURATION_ERROR"}

    def test_recent_errors_window(self, registry):
        stats = registry.record(ExchangeAPIError("a"))
        assert registry.get_recent_errors(window_ms=60_000) == [stats]

        stats.last_occurrence -= timedelta(minutes=5)
        assert registry.get_recent_errors(window_ms=60_000) == []

    def test_summary(self, registry):
        registry.record(ExchangeAPIError("a"), recovered=True, recovery_time_ms=100)
        registry.record(ExchangeAPIError("b"))
        registry.record(JournalWriteError("c"), recovered=True, recovery_time_ms=400)

        summary = registry.get_summary()

        assert summary["total_errors"] == 3
        assert summary["unique_codes"] == 2
        assert summary["by_domain"]["EXCHANGE"] == 2
        assert summary["by_domain"]["PERSISTENCE"] == 1
        assert summary["by_severity"]["HIGH"] == 3
        assert summary["recovery_rate"] == pytest.approx(2 / 3)
        assert summary["average_recovery_time_ms"] == pytest.approx(250)
        assert summary["top_errors"][0]["code"] == "EXCHANGE_API_ERROR"

    def test_empty_registry_is_healthy(self, registry):
        assert registry.is_healthy() is True
        assert registry.get_summary()["recovery_rate"] == 0.0

    def test_health_threshold(self, registry):
        for _ in range(4):
            registry.record(ExchangeAPIError("a"), recovered=True)
        registry.record(ExchangeAPIError("b"))

        assert registry.is_healthy(threshold=0.8) is True
        assert registry.is_healthy(threshold=0.9) is False

    def test_report_mentions_critical_errors(self, registry):
        registry.record(ConfigurationError("bad config"))
        report = registry.generate_report()

        assert "ERROR REGISTRY REPORT" in report
        assert "Healthy: NO" in report
        assert "[CONFIGURATION_ERROR]" in report

    def test_clear(self, registry):
        registry.record(ExchangeAPIError("a"))
        registry.clear()
        assert registry.get_raw() == {}


def test_from_settings():
    registry = ErrorRegistry.from_settings(
        ErrorRegistrySettings(max_tracked_errors=5, health_threshold=0.5, recent_window_ms=10)
    )

    registry.record(ExchangeAPIError("a"), recovered=True)
    registry.record(ExchangeAPIError("b"))

    assert registry.max_tracked_errors == 5
    assert registry.is_healthy() is True
    assert registry.log_health() is True
    assert registry.log_health(threshold=0.9) is False


def test_default_registry_is_shared():
    assert get_error_registry() is get_error_registry()
