"""Periodic metric sampling into a bounded history.

Each metric field is produced by its own probe (a zero-argument callable
returning a float). Probes fail independently: a failing probe contributes a
degraded sentinel value and raises the snapshot's error rate, but
``collect()`` always returns a snapshot.

Usage::

    collector = MetricsCollector({"cpu_usage": cpu_usage_probe})
    collector.subscribe(rule_engine_callback)
    snapshot = collector.collect()
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from lotysis_alerts.models import METRIC_FIELDS, MetricSnapshot

logger = logging.getLogger(__name__)

MetricProbe = Callable[[], float]
SnapshotSubscriber = Callable[[MetricSnapshot], None]

DEFAULT_CAPACITY = 1000
DEGRADED_VALUES: dict[str, float] = {"response_time": 5000.0}
FAILED_PROBE_PENALTY = 10.0
SLOW_RESPONSE_MS = 3000.0
ERROR_RATE_WINDOW = 10


class CollectionError(Exception):
    """Raised by a metric probe that could not produce a value."""


class MetricsCollector:
    """Samples metrics into a FIFO ring buffer and publishes each snapshot.

    Thread-safe: history mutation and subscriber registration share one lock.
    Subscribers are called outside the lock, after the snapshot is appended.
    """

    def __init__(
        self,
        probes: dict[str, MetricProbe] | None = None,
        capacity: int = DEFAULT_CAPACITY,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        probes = probes or {}
        unknown = sorted(set(probes) - set(METRIC_FIELDS))
        if unknown:
            raise ValueError(f"Unknown metric fields: {', '.join(unknown)}")
        if capacity < 1:
            raise ValueError("Metrics capacity must be at least 1")

        self._probes = dict(probes)
        self._capacity = capacity
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._history: deque[MetricSnapshot] = deque(maxlen=capacity)
        self._subscribers: list[SnapshotSubscriber] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def subscribe(self, callback: SnapshotSubscriber) -> None:
        """Register a callback invoked with every new snapshot."""
        with self._lock:
            self._subscribers.append(callback)

    def collect(self) -> MetricSnapshot:
        """Sample every probe, append the snapshot and publish it."""
        values: dict[str, float] = {}
        errors: dict[str, str] = {}

        for field, probe in self._probes.items():
            try:
                values[field] = float(probe())
            except Exception as exc:
                errors[field] = str(exc) or type(exc).__name__
                values[field] = DEGRADED_VALUES.get(field, 0.0)
                logger.warning("Metric probe %s failed: %s", field, exc)

        if "error_rate" not in self._probes or "error_rate" in errors:
            values["error_rate"] = self._derived_error_rate()
        values["error_rate"] += FAILED_PROBE_PENALTY * len(errors)

        snapshot = MetricSnapshot(timestamp=self._clock(), errors=errors, **values)

        with self._lock:
            self._history.append(snapshot)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber %r failed", callback)

        return snapshot

    def collect_now(self) -> MetricSnapshot:
        """On-demand sample outside the ticker cadence."""
        logger.debug("On-demand metric collection")
        return self.collect()

    def _derived_error_rate(self) -> float:
        """Percentage of recent snapshots with a slow response time."""
        with self._lock:
            recent = list(self._history)[-ERROR_RATE_WINDOW:]
        if not recent:
            return 0.0
        slow = sum(1 for s in recent if s.response_time > SLOW_RESPONSE_MS)
        return slow / len(recent) * 100

    def latest(self) -> MetricSnapshot | None:
        with self._lock:
            return self._history[-1] if self._history else None

    def history(self, limit: int | None = None) -> list[MetricSnapshot]:
        """Return up to *limit* most recent snapshots, oldest first."""
        with self._lock:
            snapshots = list(self._history)
        if limit is not None:
            snapshots = snapshots[-limit:] if limit > 0 else []
        return snapshots

    def load(self, snapshots: Iterable[MetricSnapshot | dict[str, Any]]) -> None:
        """Replace history with *snapshots* (oldest first), keeping the newest."""
        parsed = [
            s if isinstance(s, MetricSnapshot) else MetricSnapshot(**s)
            for s in snapshots
        ]
        with self._lock:
            self._history = deque(parsed, maxlen=self._capacity)

    def export(self) -> list[dict[str, Any]]:
        with self._lock:
            return [s.model_dump(mode="json") for s in self._history]
