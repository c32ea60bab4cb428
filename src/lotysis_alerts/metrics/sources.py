"""Metric probes the collector samples.

- cpu_usage / memory_usage: host figures via psutil
- response_time: milliseconds for a GET against the API health URL
- active_users / db_connections / api_calls: ``Gauge`` counters the host
  application feeds
"""

from __future__ import annotations

import threading
import time
import urllib.error
import urllib.request
from typing import TYPE_CHECKING

import psutil

from lotysis_alerts.metrics.collector import CollectionError, MetricProbe

if TYPE_CHECKING:
    from lotysis_alerts.config import EngineConfig

GAUGE_FIELDS: tuple[str, ...] = ("active_users", "db_connections", "api_calls")


def cpu_usage_probe() -> float:
    """System-wide CPU utilisation since the previous call, in percent."""
    return float(psutil.cpu_percent(interval=None))


def memory_usage_probe() -> float:
    return float(psutil.virtual_memory().percent)


class ResponseTimeProbe:
    """Time a GET request against *url*, in milliseconds.

    Raises CollectionError on connection failures, timeouts and non-2xx
    responses.
    """

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout

    @property
    def url(self) -> str:
        return self._url

    def __call__(self) -> float:
        start = time.monotonic()
        req = urllib.request.Request(self._url, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:  # noqa: S310
                resp.read()
                status = resp.status
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise CollectionError(f"GET {self._url} failed: {exc}") from exc
        if not 200 <= status < 300:
            raise CollectionError(f"GET {self._url} returned HTTP {status}")
        return (time.monotonic() - start) * 1000


class Gauge:
    """Thread-safe numeric value set by the host application."""

    def __init__(self, value: float = 0.0) -> None:
        self._value = float(value)
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def __call__(self) -> float:
        return self.value


def build_default_probes(
    config: EngineConfig,
    gauges: dict[str, Gauge] | None = None,
) -> dict[str, MetricProbe]:
    """Build the probe map for an engine configuration.

    ``response_time`` is only sampled when ``api_url`` is configured.
    Gauges default to fresh zero-valued instances.
    """
    gauges = gauges or {}
    probes: dict[str, MetricProbe] = {
        "cpu_usage": cpu_usage_probe,
        "memory_usage": memory_usage_probe,
    }
    if config.api_url:
        probes["response_time"] = ResponseTimeProbe(
            config.api_url, timeout=config.probe_timeout,
        )
    for field in GAUGE_FIELDS:
        probes[field] = gauges.get(field) or Gauge()
    return probes
