"""
Error telemetry registry.

Aggregates handled errors per `code:domain` key: occurrence counts,
recovery outcomes and recovery times. One instance per trading session;
`get_error_registry()` returns a process default for callers that don't
inject their own.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from trading_bot.domain.errors import ErrorDomain, ErrorSeverity, TradingError
from trading_bot.observability.logging import LOG_TAG_HEALTH, get_logger

if TYPE_CHECKING:
    from trading_bot.config.settings import ErrorRegistrySettings

logger = get_logger(__name__)

MAX_TRACKED_ERRORS = 1000
DEFAULT_HEALTH_THRESHOLD = 0.8
CRITICAL_RECOVERY_RATE = 0.5
TOP_ERRORS_LIMIT = 10
RECENT_WINDOW_MS = 60_000


@dataclass(slots=True)
class ErrorStats:
    """Aggregate for one error code within one domain."""

    code: str
    domain: ErrorDomain
    severity: ErrorSeverity
    count: int
    first_occurrence: datetime
    last_occurrence: datetime
    recovered_count: int = 0
    recovery_rate: float = 0.0
    average_recovery_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "count": self.count,
            "first_occurrence": self.first_occurrence.isoformat(),
            "last_occurrence": self.last_occurrence.isoformat(),
            "recovered_count": self.recovered_count,
            "recovery_rate": self.recovery_rate,
            "average_recovery_time_ms": self.average_recovery_time_ms,
        }


class ErrorRegistry:
    """
    Tracks error occurrences and recovery outcomes.

    Bounded to `max_tracked_errors` distinct keys; beyond that the entry
    with the oldest first occurrence is evicted.
    """

    def __init__(
        self,
        max_tracked_errors: int = MAX_TRACKED_ERRORS,
        health_threshold: float = DEFAULT_HEALTH_THRESHOLD,
        recent_window_ms: int = RECENT_WINDOW_MS,
    ):
        self.max_tracked_errors = max_tracked_errors
        self.health_threshold = health_threshold
        self.recent_window_ms = recent_window_ms
        self._stats: dict[str, ErrorStats] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: ErrorRegistrySettings) -> ErrorRegistry:
        return cls(
            max_tracked_errors=settings.max_tracked_errors,
            health_threshold=settings.health_threshold,
            recent_window_ms=settings.recent_window_ms,
        )

    @staticmethod
    def _key(code: str, domain: ErrorDomain) -> str:
        return f"{code}:{domain.value}"

    # =========================================================================
    # Recording
    # =========================================================================

    def record(
        self,
        error: TradingError,
        recovered: bool = False,
        recovery_time_ms: float | None = None,
    ) -> ErrorStats:
        """Record one occurrence of `error` and its recovery outcome."""
        now = datetime.now(UTC)
        key = self._key(error.code, error.domain)

        with self._lock:
            stats = self._stats.get(key)
            if stats is None:
                stats = ErrorStats(
                    code=error.code,
                    domain=error.domain,
                    severity=error.severity,
                    count=0,
                    first_occurrence=now,
                    last_occurrence=now,
                )
                self._stats[key] = stats

            stats.count += 1
            stats.last_occurrence = now

            if recovered:
                stats.recovered_count += 1
                if recovery_time_ms is not None:
                    n = stats.recovered_count
                    stats.average_recovery_time_ms = (
                        stats.average_recovery_time_ms * (n - 1) + recovery_time_ms
                    ) / n

            stats.recovery_rate = stats.recovered_count / stats.count

            if len(self._stats) > self.max_tracked_errors:
                self._evict_oldest()

        return stats

    def _evict_oldest(self) -> None:
        oldest_key = min(self._stats, key=lambda k: self._stats[k].first_occurrence)
        evicted = self._stats.pop(oldest_key)
        logger.debug(f"Error registry full, evicted {oldest_key} (count={evicted.count})")

    # =========================================================================
    # Queries
    # =========================================================================

    def get_stats(self) -> list[ErrorStats]:
        with self._lock:
            return list(self._stats.values())

    def get_stats_by_code(self, code: str) -> list[ErrorStats]:
        return [s for s in self.get_stats() if s.code == code]

    def get_stats_by_domain(self, domain: ErrorDomain) -> list[ErrorStats]:
        return [s for s in self.get_stats() if s.domain == domain]

    def get_stats_by_severity(self, severity: ErrorSeverity) -> list[ErrorStats]:
        return [s for s in self.get_stats() if s.severity == severity]

    def get_critical_errors(self) -> list[ErrorStats]:
        """Errors recovered less than half of the time."""
        return [s for s in self.get_stats() if s.recovery_rate < CRITICAL_RECOVERY_RATE]

    def get_recent_errors(self, window_ms: int | None = None) -> list[ErrorStats]:
        window = self.recent_window_ms if window_ms is None else window_ms
        cutoff = datetime.now(UTC) - timedelta(milliseconds=window)
        return [s for s in self.get_stats() if s.last_occurrence >= cutoff]

    def get_summary(self) -> dict[str, Any]:
        """Totals, per-domain/severity breakdown, top errors and recovery figures."""
        stats = self.get_stats()

        total_errors = sum(s.count for s in stats)
        total_recovered = sum(s.recovered_count for s in stats)

        by_domain = {d.value: 0 for d in ErrorDomain}
        by_severity = {s.value: 0 for s in ErrorSeverity}
        for s in stats:
            by_domain[s.domain.value] += s.count
            by_severity[s.severity.value] += s.count

        # Weight each code's average by how many recoveries it contributed
        recovery_time_sum = sum(s.average_recovery_time_ms * s.recovered_count for s in stats)

        top_errors = sorted(stats, key=lambda s: s.count, reverse=True)[:TOP_ERRORS_LIMIT]

        return {
            "total_errors": total_errors,
            "unique_codes": len(stats),
            "by_domain": by_domain,
            "by_severity": by_severity,
            "recovery_rate": total_recovered / total_errors if total_errors else 0.0,
            "average_recovery_time_ms": recovery_time_sum / total_recovered if total_recovered else 0.0,
            "top_errors": [s.to_dict() for s in top_errors],
        }

    def is_healthy(self, threshold: float | None = None) -> bool:
        """Overall recovery rate at or above `threshold`; healthy when nothing was recorded."""
        summary = self.get_summary()
        if summary["total_errors"] == 0:
            return True
        return summary["recovery_rate"] >= (self.health_threshold if threshold is None else threshold)

    def generate_report(self) -> str:
        """Plain-text report for logs and status commands."""
        summary = self.get_summary()
        lines = [
            "=== ERROR REGISTRY REPORT ===",
            f"Total errors: {summary['total_errors']}",
            f"Unique codes: {summary['unique_codes']}",
            f"Recovery rate: {summary['recovery_rate']:.1%}",
            f"Average recovery time: {summary['average_recovery_time_ms']:.1f}ms",
            f"Healthy: {'YES' if self.is_healthy() else 'NO'}",
            "",
            "By domain:",
        ]
        lines.extend(f"  {domain}: {count}" for domain, count in summary["by_domain"].items() if count)
        lines.append("By severity:")
        lines.extend(f"  {severity}: {count}" for severity, count in summary["by_severity"].items() if count)

        if summary["top_errors"]:
            lines.append("Top errors:")
            for entry in summary["top_errors"]:
                lines.append(
                    f"  [{entry['code']}] {entry['domain']} x{entry['count']} "
                    f"(recovered {entry['recovery_rate']:.0%})"
                )

        critical = self.get_critical_errors()
        if critical:
            lines.append("Needs attention (recovery < 50%):")
            lines.extend(f"  [{s.code}] {s.domain.value} x{s.count}" for s in critical)

        return "\n".join(lines)

    def log_health(self, threshold: float | None = None) -> bool:
        """Log a one-line health summary and return the health flag."""
        threshold = self.health_threshold if threshold is None else threshold
        summary = self.get_summary()
        healthy = self.is_healthy(threshold)
        msg = (
            f"{LOG_TAG_HEALTH} Errors: {summary['total_errors']} "
            f"({summary['unique_codes']} codes), recovery {summary['recovery_rate']:.1%}"
        )
        if healthy:
            logger.info(msg)
        else:
            logger.warning(f"{msg} below threshold {threshold:.0%}")
        return healthy

    def get_raw(self) -> dict[str, ErrorStats]:
        """Copy of the underlying key -> stats map."""
        with self._lock:
            return dict(self._stats)

    def clear(self) -> None:
        """Drop all statistics (for testing)."""
        with self._lock:
            self._stats.clear()


# Default instance for callers that don't inject one
_error_registry = ErrorRegistry()


def get_error_registry() -> ErrorRegistry:
    """Get the process default error registry."""
    return _error_registry
