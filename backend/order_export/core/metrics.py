"""Prometheus metrics the export engine pushes into."""

from typing import Mapping, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class ExportMetrics:
    """
    Named counters and timers for exports, labelled by mode (sync | async).
    Each instance owns its registry so tests can build a fresh one.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.duration_seconds = Histogram(
            "export_duration_seconds",
            "Wall-clock duration of completed exports.",
            labelnames=("mode",),
            buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600),
            registry=self.registry,
        )
        self.rows_total = Counter(
            "export_rows_total",
            "Rows written by exports.",
            labelnames=("mode",),
            registry=self.registry,
        )
        self.errors_total = Counter(
            "export_errors_total",
            "Exports that ended in an error.",
            labelnames=("mode",),
            registry=self.registry,
        )
        self.db_pool_connections = Gauge(
            "export_db_pool_connections",
            "Database pool connections by state (busy, open, min, max).",
            labelnames=("state",),
            registry=self.registry,
        )

    def observe_duration(self, mode: str, seconds: float) -> None:
        self.duration_seconds.labels(mode=mode).observe(seconds)

    def add_rows(self, mode: str, rows: int) -> None:
        self.rows_total.labels(mode=mode).inc(rows)

    def record_error(self, mode: str) -> None:
        self.errors_total.labels(mode=mode).inc()

    def set_pool_stats(self, stats: Mapping[str, int]) -> None:
        for state, value in stats.items():
            self.db_pool_connections.labels(state=state).set(value)

    def render(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)


_METRICS_INSTANCE: Optional[ExportMetrics] = None


def get_export_metrics() -> ExportMetrics:
    """Process-wide metrics sink exposed on /metrics."""
    global _METRICS_INSTANCE
    if _METRICS_INSTANCE is None:
        _METRICS_INSTANCE = ExportMetrics()
    return _METRICS_INSTANCE
