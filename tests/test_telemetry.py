"""
Tests for the telemetry module.
"""

import pytest

from agent_orchestrator.telemetry import (
    Counter,
    Gauge,
    Histogram,
    MetricRegistry,
    TelemetryConfig,
    percentile,
)


class TestCounter:
    """Tests for Counter metric."""

    def test_increment(self):
        counter = Counter()
        counter.inc()
        counter.inc(4)
        assert counter.value == 5

    def test_reset(self):
        counter = Counter()
        counter.inc(10)
        assert counter.reset() == 10
        assert counter.value == 0


class TestGauge:
    """Tests for Gauge metric."""

    def test_set_inc_dec(self):
        gauge = Gauge()
        gauge.set(3)
        gauge.inc()
        gauge.dec(2.5)
        assert gauge.value == pytest.approx(1.5)


class TestHistogram:
    """Tests for Histogram metric."""

    def test_percentiles(self):
        histogram = Histogram()
        for value in range(1, 101):
            histogram.observe(float(value))

        assert histogram.count == 100
        assert histogram.mean == pytest.approx(50.5)
        assert histogram.percentiles() == {"p50": 50.0, "p95": 95.0, "p99": 99.0}

    def test_buckets(self):
        histogram = Histogram(buckets=(0.1, 1.0))
        histogram.observe(0.05)
        histogram.observe(0.5)
        histogram.observe(7.0)

        snapshot = histogram.snapshot()
        assert snapshot["buckets"] == {"0.1": 1, "1.0": 1, "inf": 1}
        assert snapshot["min"] == 0.05
        assert snapshot["max"] == 7.0

    def test_sample_window(self):
        histogram = Histogram(reservoir_size=2)
        for value in (100.0, 1.0, 2.0):
            histogram.observe(value)

        assert histogram.count == 3
        assert histogram.percentiles()["p99"] == 2.0

    def test_empty(self):
        assert Histogram().mean == 0.0
        assert percentile([], 50) == 0.0


class TestMetricRegistry:
    """Tests for MetricRegistry."""

    def test_get_or_create(self):
        registry = MetricRegistry()
        assert registry.counter("process.completed") is registry.counter("process.completed")
        assert registry.histogram("step.duration") is registry.histogram("step.duration")

    def test_snapshot(self):
        registry = MetricRegistry()
        registry.inc("process.completed")
        registry.inc("process.completed")
        registry.set_gauge("queue.depth", 4)
        registry.observe("process.duration", 0.2)
        registry.inc("workflow.completed")

        snapshot = registry.snapshot()
        assert snapshot["counters"] == {"process.completed": 2, "workflow.completed": 1}
        assert snapshot["gauges"] == {"queue.depth": 4}
        assert snapshot["histograms"]["process.duration"]["count"] == 1

        scoped = registry.snapshot(prefix="workflow.")
        assert scoped["counters"] == {"workflow.completed": 1}
        assert scoped["histograms"] == {}

    def test_disabled(self):
        registry = MetricRegistry(TelemetryConfig(enabled=False))
        registry.inc("process.completed")
        registry.observe("process.duration", 1.0)

        assert registry.snapshot() == {"counters": {}, "gauges": {}, "histograms": {}}

    def test_reset(self):
        registry = MetricRegistry()
        registry.inc("circuit.open", 3)
        registry.set_gauge("queue.depth", 2)

        previous = registry.reset()

        assert previous["counters"]["circuit.open"] == 3
        assert registry.counter("circuit.open").value == 0
        assert registry.gauge("queue.depth").value == 0.0

    def test_config_validation(self):
        with pytest.raises(ValueError):
            TelemetryConfig(reservoir_size=0)
