"""
Metrics collection for the orchestration core.

This module provides low-overhead in-process metrics:
- Counter / Gauge: thread-safe scalar metrics
- Histogram: bucket counts plus a bounded sample window for p50/p95/p99
- MetricRegistry: get-or-create registry with snapshot/reset

Metric names are dotted, e.g. ``process.completed`` or ``step.duration``.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Any


@dataclass
class TelemetryConfig:
    """Configuration for metrics collection."""

    enabled: bool = True

    # Histogram bucket boundaries (seconds)
    latency_buckets: tuple[float, ...] = (0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)

    # Samples kept per histogram for percentile estimation
    reservoir_size: int = 1000

    def __post_init__(self) -> None:
        if self.reservoir_size < 1:
            raise ValueError("reservoir_size must be at least 1")


class Counter:
    """Thread-safe counter metric."""

    __slots__ = ("_value", "_lock")

    def __init__(self, initial: int = 0) -> None:
        self._value = initial
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        return self._value

    def reset(self) -> int:
        """Reset and return the previous value."""
        with self._lock:
            prev = self._value
            self._value = 0
            return prev


class Gauge:
    """Thread-safe gauge metric."""

    __slots__ = ("_value", "_lock")

    def __init__(self, initial: float = 0.0) -> None:
        self._value = initial
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> float:
        return self._value


def percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    if not sorted_values:
        return 0.0
    rank = max(0, min(len(sorted_values) - 1, int(round(pct / 100.0 * len(sorted_values))) - 1))
    return sorted_values[rank]


class Histogram:
    """Thread-safe histogram with buckets and a sliding sample window."""

    __slots__ = ("_buckets", "_counts", "_sum", "_count", "_min", "_max", "_samples", "_lock")

    def __init__(
        self,
        buckets: tuple[float, ...] = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
        reservoir_size: int = 1000,
    ) -> None:
        self._buckets = tuple(sorted(buckets)) + (float("inf"),)
        self._counts = [0] * len(self._buckets)
        self._sum = 0.0
        self._count = 0
        self._min: float | None = None
        self._max: float | None = None
        self._samples: deque[float] = deque(maxlen=reservoir_size)
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            self._min = value if self._min is None else min(self._min, value)
            self._max = value if self._max is None else max(self._max, value)
            self._samples.append(value)
            for i, bound in enumerate(self._buckets):
                if value <= bound:
                    self._counts[i] += 1
                    break

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def mean(self) -> float:
        return self._sum / self._count if self._count > 0 else 0.0

    def percentiles(self) -> dict[str, float]:
        with self._lock:
            ordered = sorted(self._samples)
        return {
            "p50": percentile(ordered, 50),
            "p95": percentile(ordered, 95),
            "p99": percentile(ordered, 99),
        }

    def snapshot(self) -> dict[str, Any]:
        pcts = self.percentiles()
        with self._lock:
            return {
                "count": self._count,
                "sum": self._sum,
                "mean": self.mean,
                "min": self._min or 0.0,
                "max": self._max or 0.0,
                **pcts,
                "buckets": {str(b): c for b, c in zip(self._buckets, self._counts)},
            }


class MetricRegistry:
    """Central registry for all metrics."""

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self.config = config or TelemetryConfig()
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str) -> Counter:
        """Get or create a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter()
            return self._counters[name]

    def gauge(self, name: str) -> Gauge:
        """Get or create a gauge."""
        with self._lock:
            if name not in self._gauges:
                self._gauges[name] = Gauge()
            return self._gauges[name]

    def histogram(self, name: str, buckets: tuple[float, ...] | None = None) -> Histogram:
        """Get or create a histogram."""
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(
                    buckets or self.config.latency_buckets,
                    reservoir_size=self.config.reservoir_size,
                )
            return self._histograms[name]

    def inc(self, name: str, amount: int = 1) -> None:
        if self.config.enabled:
            self.counter(name).inc(amount)

    def observe(self, name: str, value: float) -> None:
        if self.config.enabled:
            self.histogram(name).observe(value)

    def set_gauge(self, name: str, value: float) -> None:
        if self.config.enabled:
            self.gauge(name).set(value)

    def snapshot(self, prefix: str | None = None) -> dict[str, Any]:
        """Return a snapshot of all metrics, optionally limited to a name prefix."""
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            histograms = dict(self._histograms)

        def keep(name: str) -> bool:
            return prefix is None or name.startswith(prefix)

        return {
            "counters": {k: v.value for k, v in sorted(counters.items()) if keep(k)},
            "gauges": {k: v.value for k, v in sorted(gauges.items()) if keep(k)},
            "histograms": {k: v.snapshot() for k, v in sorted(histograms.items()) if keep(k)},
        }

    def reset(self) -> dict[str, Any]:
        """Reset counters and gauges and return the previous snapshot."""
        snapshot = self.snapshot()
        with self._lock:
            for c in self._counters.values():
                c.reset()
            for g in self._gauges.values():
                g.set(0.0)
            # Histograms keep their distribution data.
        return snapshot


__all__ = [
    "TelemetryConfig",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricRegistry",
    "percentile",
]
