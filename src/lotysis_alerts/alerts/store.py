"""Alert lifecycle and retention.

Status transitions::

    active -> acknowledged -> resolved
    active -> resolved

Resolved is terminal. Transitions that would move backwards, or repeat,
are no-ops that leave the alert untouched.

Retention is bounded. When over capacity, resolved alerts are evicted
oldest first, then acknowledged ones. Active alerts are never evicted.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from lotysis_alerts.models import Alert, AlertRule, AlertStatus

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 500


class AlertStoreError(Exception):
    """Base error for alert store operations."""


class AlertNotFoundError(AlertStoreError):
    """Raised when an alert id is unknown."""


def format_number(value: float) -> str:
    """Render 85.0 as ``85`` and 85.5 as ``85.5``."""
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


def format_alert_message(rule: AlertRule, metric_value: float) -> str:
    return (
        f"{rule.name}: {rule.metric} is {format_number(metric_value)} "
        f"(threshold: {format_number(rule.threshold)})"
    )


class AlertStore:
    """In-memory alert store, ordered oldest first internally.

    Thread-safe via a lock on all state access. Every alert handed out is a
    copy, so callers cannot mutate stored state.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("Alert capacity must be at least 1")
        self._capacity = capacity
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._alerts: dict[str, Alert] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, rule: AlertRule, metric_value: float) -> Alert:
        """Materialise a breach of *rule* as a new active alert."""
        alert = Alert(
            rule_id=rule.id,
            rule_name=rule.name,
            message=format_alert_message(rule, metric_value),
            severity=rule.severity,
            triggered_at=self._clock(),
            metric_value=metric_value,
            threshold=rule.threshold,
            metadata={
                "metric": rule.metric,
                "operator": str(rule.operator),
                "channels": list(rule.channels),
            },
        )
        with self._lock:
            self._alerts[alert.id] = alert
            self._enforce_capacity()
        logger.info("Alert %s triggered by rule %s", alert.id, rule.id)
        return alert.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def acknowledge(self, alert_id: str, actor: str) -> Alert | None:
        """Move an active alert to acknowledged.

        Returns the updated alert, or None when the alert was already
        acknowledged or resolved (nothing is changed).
        """
        if not actor or not actor.strip():
            raise ValueError("acknowledge requires a non-empty actor")
        with self._lock:
            alert = self._require(alert_id)
            if alert.status != AlertStatus.ACTIVE:
                logger.debug(
                    "Ignoring acknowledge of %s alert %s", alert.status, alert_id,
                )
                return None
            updated = alert.model_copy(update={
                "status": AlertStatus.ACKNOWLEDGED,
                "acknowledged_at": self._clock(),
                "acknowledged_by": actor,
            })
            self._alerts[alert_id] = updated
        return updated.model_copy(deep=True)

    def resolve(self, alert_id: str) -> Alert | None:
        """Resolve an alert. Idempotent: returns None if already resolved."""
        with self._lock:
            alert = self._require(alert_id)
            if alert.status == AlertStatus.RESOLVED:
                return None
            updated = alert.model_copy(update={
                "status": AlertStatus.RESOLVED,
                "resolved_at": self._clock(),
            })
            self._alerts[alert_id] = updated
        return updated.model_copy(deep=True)

    def _require(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert '{alert_id}' not found")
        return alert

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, alert_id: str) -> Alert | None:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.model_copy(deep=True) if alert else None

    def list(self, status: AlertStatus | None = None) -> list[Alert]:
        """Return alerts newest first, optionally filtered by status."""
        with self._lock:
            alerts = list(self._alerts.values())
        if status is not None:
            alerts = [a for a in alerts if a.status == status]
        alerts.sort(key=lambda a: a.triggered_at, reverse=True)
        return [a.model_copy(deep=True) for a in alerts]

    def latest_for_rule(self, rule_id: str) -> Alert | None:
        with self._lock:
            matching = [a for a in self._alerts.values() if a.rule_id == rule_id]
        if not matching:
            return None
        return max(matching, key=lambda a: a.triggered_at).model_copy(deep=True)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def _enforce_capacity(self) -> None:
        """Evict resolved, then acknowledged, alerts oldest first. Caller holds lock."""
        excess = len(self._alerts) - self._capacity
        if excess <= 0:
            return
        for status in (AlertStatus.RESOLVED, AlertStatus.ACKNOWLEDGED):
            candidates = sorted(
                (a for a in self._alerts.values() if a.status == status),
                key=lambda a: a.triggered_at,
            )
            for alert in candidates[:excess]:
                del self._alerts[alert.id]
            excess -= min(excess, len(candidates))
            if excess == 0:
                return
        logger.warning(
            "Alert store over capacity (%d > %d) with only active alerts left",
            len(self._alerts), self._capacity,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, alerts: Iterable[Alert | dict[str, Any]]) -> None:
        parsed = [a if isinstance(a, Alert) else Alert(**a) for a in alerts]
        parsed.sort(key=lambda a: a.triggered_at)
        with self._lock:
            self._alerts = {a.id: a for a in parsed}
            self._enforce_capacity()

    def export(self) -> list[dict[str, Any]]:
        """Serialise all alerts, newest first."""
        return [a.model_dump(mode="json") for a in self.list()]
