"""
Metrics collection for RaceSteward.

A small thread-safe registry of:
- Counters: lifecycle transitions, dispatched notifications, sweep runs
- Gauges: active events, open protests
- Histograms: sweep and request durations

Metrics are exposed in Prometheus text format and as JSON.
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

# Latency buckets in milliseconds
DEFAULT_BUCKETS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000)

LabelKey = tuple[tuple[str, str], ...]


@dataclass
class Histogram:
    """Cumulative bucket counts plus running sum and count."""

    bounds: tuple[float, ...] = DEFAULT_BUCKETS
    bucket_counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.bucket_counts:
            self.bucket_counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.bucket_counts[i] += 1
        self.bucket_counts[-1] += 1

    def buckets(self) -> list[tuple[str, int]]:
        """(le, cumulative count) pairs, ending with +Inf."""
        labels = [f"{b:g}" for b in self.bounds] + ["+Inf"]
        return list(zip(labels, self.bucket_counts))


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _render_labels(key: LabelKey, extra: str = "") -> str:
    parts = [f'{k}="{v}"' for k, v in key]
    if extra:
        parts.append(extra)
    return "{" + ",".join(parts) + "}" if parts else ""


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Collects counters, gauges, and histograms with optional labels.
    """

    def __init__(self, namespace: str = "racesteward"):
        self.namespace = namespace
        self._lock = threading.RLock()
        self._counters: dict[str, dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[LabelKey, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    # Counter operations

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        """Increment a counter."""
        with self._lock:
            self._counters[name][_label_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        """
        Get a counter value.

        Without labels, returns the total across every label set.
        """
        with self._lock:
            values = self._counters.get(name, {})
            if labels is None:
                return sum(values.values())
            return values.get(_label_key(labels), 0)

    # Gauge operations

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """Set a gauge value."""
        with self._lock:
            self._gauges[name][_label_key(labels)] = value

    def increment_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][_label_key(labels)] += value

    def decrement_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][_label_key(labels)] -= value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(_label_key(labels), 0.0)

    # Histogram operations

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a timing observation in milliseconds."""
        with self._lock:
            series = self._histograms[name]
            key = _label_key(labels)
            if key not in series:
                series[key] = Histogram()
            series[key].observe(value_ms)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Context manager for timing code blocks."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export methods

    def get_all(self) -> dict[str, Any]:
        """Get all metrics as a JSON-friendly dictionary."""

        def label_str(key: LabelKey) -> str:
            return ",".join(f"{k}={v}" for k, v in key) or "_total"

        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "counters": {
                    name: {label_str(k): v for k, v in values.items()}
                    for name, values in self._counters.items()
                },
                "gauges": {
                    name: {label_str(k): v for k, v in values.items()}
                    for name, values in self._gauges.items()
                },
                "histograms": {
                    name: {
                        label_str(k): {
                            "count": h.count,
                            "sum": round(h.sum, 2),
                            "avg": round(h.sum / h.count, 2) if h.count else 0,
                        }
                        for k, h in series.items()
                    }
                    for name, series in self._histograms.items()
                },
            }

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        ns = self.namespace
        lines = [
            f"# HELP {ns}_uptime_seconds Time since process start",
            f"# TYPE {ns}_uptime_seconds gauge",
            f"{ns}_uptime_seconds {time.time() - self._start_time:.2f}",
            "",
        ]

        with self._lock:
            for kind, registry in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in sorted(registry.items()):
                    metric = f"{ns}_{name}"
                    lines.append(f"# TYPE {metric} {kind}")
                    for key, value in values.items():
                        lines.append(f"{metric}{_render_labels(key)} {value}")
                    lines.append("")

            for name, series in sorted(self._histograms.items()):
                metric = f"{ns}_{name}"
                lines.append(f"# TYPE {metric} histogram")
                for key, hist in series.items():
                    for le, count in hist.buckets():
                        le_label = f'le="{le}"'
                        lines.append(f"{metric}_bucket{_render_labels(key, le_label)} {count}")
                    lines.append(f"{metric}_sum{_render_labels(key)} {hist.sum:.2f}")
                    lines.append(f"{metric}_count{_render_labels(key)} {hist.count}")
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()
