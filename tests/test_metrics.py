"""Tests for the metrics collector and metric probes."""

from __future__ import annotations

import threading
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from lotysis_alerts.config import EngineConfig
from lotysis_alerts.metrics.collector import CollectionError, MetricsCollector
from lotysis_alerts.metrics.sources import (
    Gauge,
    ResponseTimeProbe,
    build_default_probes,
    cpu_usage_probe,
    memory_usage_probe,
)
from lotysis_alerts.models import MetricSnapshot


def _failing() -> float:
    raise CollectionError("probe down")


class TestCollect:
    def test_samples_every_probe(self, clock):
        collector = MetricsCollector(
            {"cpu_usage": lambda: 42.0, "memory_usage": lambda: 63.5}, _clock=clock,
        )
        snap = collector.collect()
        assert snap.cpu_usage == 42.0
        assert snap.memory_usage == 63.5
        assert snap.timestamp == clock()
        assert snap.errors == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="bogus"):
            MetricsCollector({"bogus": lambda: 1.0})

    def test_failed_probe_is_contained(self, clock):
        collector = MetricsCollector(
            {"cpu_usage": _failing, "memory_usage": lambda: 50.0}, _clock=clock,
        )
        snap = collector.collect()
        assert snap.cpu_usage == 0.0
        assert snap.memory_usage == 50.0
        assert snap.errors == {"cpu_usage": "probe down"}
        assert snap.error_rate == 10.0

    def test_failed_response_time_uses_degraded_value(self, clock):
        collector = MetricsCollector({"response_time": _failing}, _clock=clock)
        snap = collector.collect()
        assert snap.response_time == 5000.0
        assert "response_time" in snap.errors

    def test_each_failure_adds_to_error_rate(self, clock):
        collector = MetricsCollector(
            {"cpu_usage": _failing, "memory_usage": _failing}, _clock=clock,
        )
        assert collector.collect().error_rate == 20.0

    def test_error_rate_probe_wins_over_derivation(self, clock):
        collector = MetricsCollector(
            {"error_rate": lambda: 3.0, "response_time": lambda: 4000.0}, _clock=clock,
        )
        assert collector.collect().error_rate == 3.0

    def test_error_rate_derived_from_slow_responses(self, clock):
        times = iter([4000.0, 100.0, 4000.0, 100.0, 50.0])
        collector = MetricsCollector({"response_time": lambda: next(times)}, _clock=clock)
        for _ in range(4):
            collector.collect()
        # History now holds 2 slow out of 4 samples.
        assert collector.collect().error_rate == 50.0

    def test_first_snapshot_has_zero_derived_error_rate(self, clock):
        collector = MetricsCollector({"response_time": lambda: 4000.0}, _clock=clock)
        assert collector.collect().error_rate == 0.0


class TestHistory:
    def test_ring_buffer_evicts_oldest(self, clock):
        counter = iter(range(10))
        collector = MetricsCollector(
            {"api_calls": lambda: float(next(counter))}, capacity=3, _clock=clock,
        )
        for _ in range(5):
            collector.collect()
        assert [s.api_calls for s in collector.history()] == [2.0, 3.0, 4.0]

    def test_history_limit(self, clock):
        collector = MetricsCollector({"cpu_usage": lambda: 1.0}, _clock=clock)
        for _ in range(5):
            collector.collect()
        assert len(collector.history(limit=2)) == 2
        assert collector.history(limit=0) == []

    def test_latest(self, clock):
        collector = MetricsCollector({}, _clock=clock)
        assert collector.latest() is None
        snap = collector.collect()
        assert collector.latest() == snap

    def test_export_and_load(self, clock):
        collector = MetricsCollector({"cpu_usage": lambda: 12.0}, _clock=clock)
        collector.collect()
        clock.advance(seconds=30)
        collector.collect()
        exported = collector.export()

        other = MetricsCollector({}, _clock=clock)
        other.load(exported)
        assert other.history() == collector.history()

    def test_load_respects_capacity(self, clock):
        snaps = [MetricSnapshot(timestamp=clock(), api_calls=i) for i in range(5)]
        collector = MetricsCollector({}, capacity=2)
        collector.load(snaps)
        assert [s.api_calls for s in collector.history()] == [3.0, 4.0]


class TestSubscribers:
    def test_subscriber_receives_snapshot_after_append(self, clock):
        collector = MetricsCollector({"cpu_usage": lambda: 5.0}, _clock=clock)
        seen: list[tuple[MetricSnapshot, int]] = []
        collector.subscribe(lambda s: seen.append((s, len(collector.history()))))
        snap = collector.collect()
        assert seen == [(snap, 1)]

    def test_subscriber_failure_is_contained(self, clock):
        collector = MetricsCollector({"cpu_usage": lambda: 5.0}, _clock=clock)
        calls: list[MetricSnapshot] = []

        def broken(_: MetricSnapshot) -> None:
            raise RuntimeError("boom")

        collector.subscribe(broken)
        collector.subscribe(calls.append)
        collector.collect_now()
        assert len(calls) == 1


class TestSources:
    @patch("lotysis_alerts.metrics.sources.psutil")
    def test_psutil_probes(self, mock_psutil: MagicMock):
        mock_psutil.cpu_percent.return_value = 12.5
        mock_psutil.virtual_memory.return_value = MagicMock(percent=71.0)
        assert cpu_usage_probe() == 12.5
        assert memory_usage_probe() == 71.0
        mock_psutil.cpu_percent.assert_called_once_with(interval=None)

    @patch("lotysis_alerts.metrics.sources.urllib.request.urlopen")
    def test_response_time_probe_measures(self, mock_urlopen: MagicMock):
        resp = MagicMock(status=200)
        mock_urlopen.return_value.__enter__.return_value = resp
        probe = ResponseTimeProbe("http://api.local/health", timeout=2.0)
        assert probe() >= 0.0
        assert mock_urlopen.call_args[1]["timeout"] == 2.0

    @patch("lotysis_alerts.metrics.sources.urllib.request.urlopen")
    def test_response_time_probe_failure(self, mock_urlopen: MagicMock):
        mock_urlopen.side_effect = urllib.error.URLError("refused")
        with pytest.raises(CollectionError, match="refused"):
            ResponseTimeProbe("http://api.local/health")()

    @patch("lotysis_alerts.metrics.sources.urllib.request.urlopen")
    def test_response_time_probe_non_2xx(self, mock_urlopen: MagicMock):
        mock_urlopen.return_value.__enter__.return_value = MagicMock(status=304)
        with pytest.raises(CollectionError, match="HTTP 304"):
            ResponseTimeProbe("http://api.local/health")()

    def test_gauge_thread_safe_increments(self):
        gauge = Gauge()

        def bump() -> None:
            for _ in range(1000):
                gauge.inc()

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert gauge() == 4000.0
        gauge.set(7)
        gauge.dec(2)
        assert gauge.value == 5.0

    def test_default_probes(self):
        probes = build_default_probes(EngineConfig())
        assert set(probes) == {
            "cpu_usage", "memory_usage", "active_users", "db_connections", "api_calls",
        }

    def test_default_probes_with_api_url(self):
        users = Gauge(3)
        probes = build_default_probes(
            EngineConfig(api_url="http://api/health"), {"active_users": users},
        )
        assert isinstance(probes["response_time"], ResponseTimeProbe)
        assert probes["active_users"] is users
