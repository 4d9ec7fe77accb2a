"""
Unit tests for Metrics System (core/metrics.py)

Tests:
- Latency recording and percentiles
- Counters with and without labels
- Gauges
- Export and reset
- LatencyTimer context manager
"""

import time

import pytest

from sandwich_bot.core.metrics import LatencyTimer, MetricsCollector, get_metrics


class TestMetricsCollector:
    """Test metrics collection functionality"""

    def test_record_latency(self, metrics_collector):
        metrics_collector.record_latency("leg_confirmation", 100.5)
        metrics_collector.record_latency("leg_confirmation", 200.3)
        metrics_collector.record_latency("leg_confirmation", 150.7)

        stats = metrics_collector.get_histogram_stats("leg_confirmation")

        assert stats.count == 3
        assert stats.min == pytest.approx(100.5)
        assert stats.max == pytest.approx(200.3)
        assert metrics_collector.get_counter("leg_confirmation_count") == 3

    def test_percentile_calculations(self, metrics_collector):
        """p50/p95/p99 use linear interpolation"""
        for i in range(100):
            metrics_collector.record_latency("opportunity_detection", float(i))

        stats = metrics_collector.get_histogram_stats("opportunity_detection")

        assert stats.p50 == pytest.approx(49.5)
        assert stats.p95 == pytest.approx(94.05)
        assert stats.p99 == pytest.approx(98.01)
        assert stats.mean == pytest.approx(49.5)

    def test_single_sample(self, metrics_collector):
        metrics_collector.record_latency("op", 7.0)
        stats = metrics_collector.get_histogram_stats("op")
        assert stats.p50 == stats.p99 == 7.0

    def test_no_samples(self, metrics_collector):
        assert metrics_collector.get_histogram_stats("missing") is None

    def test_histogram_disabled_still_counts(self):
        collector = MetricsCollector(enable_histogram=False)
        collector.record_latency("op", 5.0)

        assert collector.get_histogram_stats("op") is None
        assert collector.get_counter("op_count") == 1

    def test_sample_window_bounded(self):
        collector = MetricsCollector(max_samples=10)
        for i in range(25):
            collector.record_latency("op", float(i))

        stats = collector.get_histogram_stats("op")
        assert stats.count == 10
        assert stats.min == 15.0

    def test_counters(self, metrics_collector):
        metrics_collector.increment_counter("events_received")
        metrics_collector.increment_counter("events_received", value=4)

        assert metrics_collector.get_counter("events_received") == 5
        assert metrics_collector.get_counter("never_set") == 0

    def test_labeled_counters_are_separate(self, metrics_collector):
        metrics_collector.increment_counter("pipeline_outcomes", labels={"outcome": "completed"})
        metrics_collector.increment_counter("pipeline_outcomes", labels={"outcome": "abandoned"})
        metrics_collector.increment_counter("pipeline_outcomes", labels={"outcome": "completed"})

        assert metrics_collector.get_counter("pipeline_outcomes", labels={"outcome": "completed"}) == 2
        assert metrics_collector.get_counter("pipeline_outcomes", labels={"outcome": "abandoned"}) == 1
        assert metrics_collector.get_counter("pipeline_outcomes") == 0

    def test_gauges(self, metrics_collector):
        metrics_collector.set_gauge("trend_set_size", 50)
        metrics_collector.set_gauge("trend_set_size", 48)

        gauges = metrics_collector.export_metrics()["gauges"]
        assert gauges == {"trend_set_size": 48}

    def test_export(self, metrics_collector):
        metrics_collector.increment_counter("events_received", value=2)
        metrics_collector.increment_counter("opportunities_dropped", labels={"reason": "stale"})
        metrics_collector.set_gauge("trend_set_size", 3)
        metrics_collector.record_latency("pipeline_run", 12.0)

        exported = metrics_collector.export_metrics()

        assert exported["counters"]["events_received"] == 2
        assert exported["counters"]["opportunities_dropped{reason=stale}"] == 1
        assert exported["gauges"]["trend_set_size"] == 3
        assert exported["histograms"]["pipeline_run"]["count"] == 1

    def test_reset(self, metrics_collector):
        metrics_collector.increment_counter("x")
        metrics_collector.record_latency("y", 1.0)
        metrics_collector.reset()

        assert metrics_collector.export_metrics() == {"counters": {}, "gauges": {}, "histograms": {}}


class TestLatencyTimer:

    def test_records_elapsed_time(self, metrics_collector):
        with LatencyTimer(metrics_collector, "leg_simulation") as timer:
            time.sleep(0.01)

        assert timer.latency_ms >= 10
        assert metrics_collector.get_histogram_stats("leg_simulation").count == 1

    def test_records_on_exception(self, metrics_collector):
        with pytest.raises(RuntimeError):
            with LatencyTimer(metrics_collector, "leg_simulation"):
                raise RuntimeError("boom")

        assert metrics_collector.get_counter("leg_simulation_count") == 1


def test_global_metrics_is_shared():
    assert get_metrics() is get_metrics()
