"""Simple in-process metrics collection.

Stores counters, gauges, and histograms in memory.
Rendered in Prometheus text format by the monitoring app.
"""

from __future__ import annotations

import math
from collections import defaultdict
from threading import Lock
from typing import Any


def _percentile(sorted_data: list[float], pct: float) -> float:
    """Compute percentile from pre-sorted data using linear interpolation."""
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_data[int(k)]
    return sorted_data[int(f)] * (c - k) + sorted_data[int(c)] * (k - f)


def _histogram_stats(values: list[float]) -> dict[str, Any]:
    if not values:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}
    s = sorted(values)
    return {
        "count": len(s),
        "min": s[0],
        "max": s[-1],
        "avg": sum(s) / len(s),
        "p50": _percentile(s, 50),
        "p95": _percentile(s, 95),
    }


_MAX_SAMPLES = 1_000  # per histogram


class MetricsCollector:
    """Thread-safe in-process metrics collector.

    The engine writes from its event-loop thread while the monitoring app
    reads from Flask worker threads.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += value

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def histogram(self, name: str, value: float) -> None:
        with self._lock:
            samples = self._histograms[name]
            samples.append(value)
            if len(samples) > _MAX_SAMPLES:
                del samples[: len(samples) - _MAX_SAMPLES]

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable snapshot of all metrics."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {
                    k: _histogram_stats(v)
                    for k, v in self._histograms.items()
                },
            }

    def to_prometheus(self, prefix: str = "memebot") -> str:
        """Render counters, gauges and histogram summaries as Prometheus text."""
        snap = self.snapshot()
        lines: list[str] = []
        for name, value in sorted(snap["counters"].items()):
            safe = name.replace(".", "_").replace("-", "_")
            lines.append(f"# TYPE {prefix}_{safe} counter")
            lines.append(f"{prefix}_{safe} {value}")
        for name, value in sorted(snap["gauges"].items()):
            safe = name.replace(".", "_").replace("-", "_")
            lines.append(f"# TYPE {prefix}_{safe} gauge")
            lines.append(f"{prefix}_{safe} {value}")
        for name, stats in sorted(snap["histograms"].items()):
            safe = name.replace(".", "_").replace("-", "_")
            lines.append(f"# TYPE {prefix}_{safe} summary")
            lines.append(f'{prefix}_{safe}{{quantile="0.5"}} {stats["p50"]}')
            lines.append(f'{prefix}_{safe}{{quantile="0.95"}} {stats["p95"]}')
            lines.append(f"{prefix}_{safe}_count {stats['count']}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Global singleton
metrics = MetricsCollector()
