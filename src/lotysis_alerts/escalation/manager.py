"""Escalation of alerts left unacknowledged too long.

A periodic ``scan()`` matches open alerts against escalation rules. An
(alert, rule) pair escalates once its alert is older than the rule's
duration, and again only after another full duration has passed since the
previous escalation of that pair. Scanning more often than the duration
therefore never produces extra escalations.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from lotysis_alerts.alerts.store import AlertNotFoundError, AlertStore
from lotysis_alerts.audit.log import AuditLog
from lotysis_alerts.models import (
    Alert,
    AlertStatus,
    AuditAction,
    EscalationEvent,
    EscalationRule,
)
from lotysis_alerts.notify.dispatcher import NotificationDispatcher
from lotysis_alerts.notify.registry import ChannelRegistry

logger = logging.getLogger(__name__)

ESCALATION_TEMPLATE_ID = "alert-escalated"
SYSTEM_ACTOR = "system:escalation"


class EscalationManager:
    """Scan open alerts and escalate the overdue ones.

    Thread-safe: rule edits and escalation bookkeeping share one lock.
    Notifications are sent outside the lock.
    """

    def __init__(
        self,
        alert_store: AlertStore,
        dispatcher: NotificationDispatcher,
        registry: ChannelRegistry,
        audit_log: AuditLog,
        rules: Iterable[EscalationRule] | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._alert_store = alert_store
        self._dispatcher = dispatcher
        self._registry = registry
        self._audit = audit_log
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._rules: dict[str, EscalationRule] = {r.id: r for r in rules or []}
        self._last_escalated: dict[tuple[str, str], datetime] = {}

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def scan(self) -> list[EscalationEvent]:
        """Escalate every due (alert, rule) pair. Returns one event per escalation."""
        now = self._clock()
        due = self._select_due(now)
        events: list[EscalationEvent] = []
        for alert, rule, minutes in due:
            try:
                events.append(self._escalate(alert, rule, minutes, now))
            except Exception:
                logger.exception(
                    "Escalation of alert %s by rule %s failed", alert.id, rule.id,
                )
        return events

    def _select_due(
        self, now: datetime,
    ) -> list[tuple[Alert, EscalationRule, float]]:
        open_alerts = [
            a for a in self._alert_store.list() if a.status != AlertStatus.RESOLVED
        ]
        due: list[tuple[Alert, EscalationRule, float]] = []
        with self._lock:
            open_ids = {a.id for a in open_alerts}
            self._last_escalated = {
                k: v for k, v in self._last_escalated.items() if k[0] in open_ids
            }
            rules = [self._rules[k] for k in sorted(self._rules)]
            for alert in open_alerts:
                for rule in rules:
                    if not rule.enabled or not self._matches(alert, rule):
                        continue
                    minutes = (now - alert.triggered_at).total_seconds() / 60
                    window = rule.conditions.duration_minutes
                    if minutes <= window:
                        continue
                    last = self._last_escalated.get((alert.id, rule.id))
                    if last is not None and (now - last).total_seconds() / 60 < window:
                        continue
                    self._last_escalated[(alert.id, rule.id)] = now
                    due.append((alert, rule, minutes))
        return due

    @staticmethod
    def _matches(alert: Alert, rule: EscalationRule) -> bool:
        conditions = rule.conditions
        if conditions.severity and alert.severity not in conditions.severity:
            return False
        if conditions.no_acknowledgment and alert.status != AlertStatus.ACTIVE:
            return False
        return True

    def _escalate(
        self,
        alert: Alert,
        rule: EscalationRule,
        minutes: float,
        now: datetime,
    ) -> EscalationEvent:
        channel_ids = rule.actions.channel_ids or list(alert.metadata.get("channels", []))
        channels, unknown = self._registry.resolve_channels(channel_ids)
        if unknown:
            logger.warning(
                "Escalation rule %s references unknown channels: %s",
                rule.id, ", ".join(unknown),
            )
        channels = [c for c in channels if c.enabled]

        logger.warning(
            "Escalating alert %s (%s) after %.0f minutes unacknowledged",
            alert.id, alert.rule_name, minutes,
        )
        self._audit.log(
            AuditAction.ESCALATED,
            alert.id,
            user_id=SYSTEM_ACTOR,
            details={
                "escalation_rule_id": rule.id,
                "escalation_rule_name": rule.name,
                "unacknowledged_minutes": round(minutes, 1),
                "channel_ids": [c.id for c in channels],
                "escalate_to": list(rule.actions.escalate_to),
            },
        )

        deliveries = self._dispatcher.dispatch(
            alert,
            channels,
            template_id=ESCALATION_TEMPLATE_ID,
            context={"duration": round(minutes)},
            extra_recipients=rule.actions.escalate_to,
        )
        self._audit.record_deliveries(alert.id, deliveries)

        auto_resolved = False
        if rule.actions.auto_resolve:
            try:
                resolved = self._alert_store.resolve(alert.id)
            except AlertNotFoundError:
                resolved = None
            if resolved is not None:
                auto_resolved = True
                self._audit.log(
                    AuditAction.RESOLVED,
                    alert.id,
                    user_id=SYSTEM_ACTOR,
                    details={"reason": "auto_resolve", "escalation_rule_id": rule.id},
                )

        return EscalationEvent(
            alert_id=alert.id,
            rule_id=rule.id,
            rule_name=rule.name,
            escalated_at=now,
            unacknowledged_minutes=minutes,
            channel_ids=[c.id for c in channels],
            escalate_to=list(rule.actions.escalate_to),
            auto_resolved=auto_resolved,
            deliveries=deliveries,
        )

    def last_escalated(self, alert_id: str, rule_id: str) -> datetime | None:
        with self._lock:
            return self._last_escalated.get((alert_id, rule_id))

    # ------------------------------------------------------------------
    # Rule CRUD
    # ------------------------------------------------------------------

    def add_rule(self, rule: EscalationRule) -> EscalationRule:
        with self._lock:
            if rule.id in self._rules:
                raise ValueError(f"Escalation rule '{rule.id}' already exists")
            self._rules[rule.id] = rule
        return rule

    def update_rule(self, rule_id: str, **changes: Any) -> EscalationRule | None:
        with self._lock:
            existing = self._rules.get(rule_id)
            if existing is None:
                return None
            changes.pop("id", None)
            updated = EscalationRule(**{**existing.model_dump(), **changes})
            self._rules[rule_id] = updated
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            self._last_escalated = {
                k: v for k, v in self._last_escalated.items() if k[1] != rule_id
            }
            return self._rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> EscalationRule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def list_rules(self) -> list[EscalationRule]:
        with self._lock:
            return [self._rules[k] for k in sorted(self._rules)]

    def load_rules(self, rules: Iterable[EscalationRule | dict[str, Any]]) -> int:
        loaded: dict[str, EscalationRule] = {}
        for raw in rules:
            if isinstance(raw, EscalationRule):
                loaded[raw.id] = raw
                continue
            try:
                rule = EscalationRule(**raw)
            except (ValidationError, TypeError) as exc:
                logger.warning("Skipping invalid escalation rule %r: %s", raw, exc)
                continue
            loaded[rule.id] = rule
        with self._lock:
            self._rules = loaded
        return len(loaded)

    def export_rules(self) -> list[dict[str, Any]]:
        return [r.model_dump(mode="json") for r in self.list_rules()]
