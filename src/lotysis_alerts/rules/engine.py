"""Threshold rule evaluation with per-rule cooldowns.

Every enabled rule is checked against a snapshot in id order. A breaching
rule fires only when at least ``cooldown_seconds`` have passed since its
own previous trigger, however long the breach has lasted and whether or
not the metric dipped in between.

``eq`` is exact float equality: 80.0 == 80.0 fires, 79.99999999 does not.
Prefer ``gte``/``lte`` for derived or averaged metrics.
"""

from __future__ import annotations

import logging
import math
import operator
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from lotysis_alerts.alerts.store import AlertStore
from lotysis_alerts.models import (
    Alert,
    AlertRule,
    AlertRuleCreateRequest,
    AlertRuleUpdateRequest,
    MetricSnapshot,
    Operator,
    Severity,
)

logger = logging.getLogger(__name__)

OPERATOR_MAP: dict[Operator, Callable[[float, float], bool]] = {
    Operator.GT: operator.gt,
    Operator.GTE: operator.ge,
    Operator.LT: operator.lt,
    Operator.LTE: operator.le,
    Operator.EQ: operator.eq,
}


class RuleEvaluationError(Exception):
    """Raised when a rule cannot be evaluated against a snapshot."""


def breaches(rule: AlertRule, value: float) -> bool:
    """Return True if *value* breaches *rule*'s threshold."""
    compare = OPERATOR_MAP.get(rule.operator)
    if compare is None:
        raise RuleEvaluationError(f"Unsupported operator '{rule.operator}'")
    return compare(value, rule.threshold)


class AlertRuleEngine:
    """Evaluate alert rules and keep their cooldown bookkeeping.

    Thread-safe: evaluation and rule edits are serialised by one lock, so
    an edit never interleaves with a half-finished evaluation pass.
    """

    def __init__(
        self,
        alert_store: AlertStore,
        rules: Iterable[AlertRule] | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._alert_store = alert_store
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.RLock()
        self._rules: dict[str, AlertRule] = {r.id: r for r in rules or []}
        self._last_triggered: dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, snapshot: MetricSnapshot) -> list[Alert]:
        """Evaluate all enabled rules. Returns only newly triggered alerts."""
        triggered: list[Alert] = []
        with self._lock:
            for rule_id in sorted(self._rules):
                rule = self._rules[rule_id]
                if not rule.enabled:
                    continue
                try:
                    value = self._metric_value(rule, snapshot)
                    if not breaches(rule, value):
                        continue
                except RuleEvaluationError as exc:
                    logger.warning("Skipping rule %s: %s", rule.id, exc)
                    continue

                now = self._clock()
                if self._in_cooldown(rule, now):
                    logger.debug("Rule %s breached but in cooldown", rule.id)
                    continue

                alert = self._alert_store.create(rule, value)
                self._last_triggered[rule.id] = now
                triggered.append(alert)
        return triggered

    @staticmethod
    def _metric_value(rule: AlertRule, snapshot: MetricSnapshot) -> float:
        try:
            value = snapshot.value(rule.metric)
        except KeyError:
            raise RuleEvaluationError(f"Unknown metric '{rule.metric}'") from None
        if not isinstance(value, (int, float)) or math.isnan(value):
            raise RuleEvaluationError(
                f"Metric '{rule.metric}' has no numeric value: {value!r}"
            )
        if math.isnan(rule.threshold):
            raise RuleEvaluationError("Threshold is not a number")
        return float(value)

    def _in_cooldown(self, rule: AlertRule, now: datetime) -> bool:
        last = self.last_triggered(rule.id)
        if last is None:
            return False
        return (now - last).total_seconds() < rule.cooldown_seconds

    def last_triggered(self, rule_id: str) -> datetime | None:
        """Last trigger time; falls back to the newest stored alert for the rule."""
        with self._lock:
            last = self._last_triggered.get(rule_id)
        if last is not None:
            return last
        latest = self._alert_store.latest_for_rule(rule_id)
        return latest.triggered_at if latest else None

    # ------------------------------------------------------------------
    # Rule CRUD
    # ------------------------------------------------------------------

    def add_rule(self, req: AlertRuleCreateRequest) -> AlertRule:
        rule = AlertRule(**req.model_dump())
        now = self._clock()
        rule = rule.model_copy(update={"created_at": now, "updated_at": now})
        with self._lock:
            self._rules[rule.id] = rule
        return rule

    def update_rule(
        self, rule_id: str, req: AlertRuleUpdateRequest,
    ) -> AlertRule | None:
        """Apply the fields set on *req*. Returns None if not found."""
        with self._lock:
            existing = self._rules.get(rule_id)
            if existing is None:
                return None
            changes = req.model_dump(exclude_none=True)
            if not changes:
                return existing
            changes["updated_at"] = self._clock()
            # Re-validate through the model so a bad combination is rejected.
            updated = AlertRule(**{**existing.model_dump(), **changes})
            self._rules[rule_id] = updated
        return updated

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            self._last_triggered.pop(rule_id, None)
            return self._rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> AlertRule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def list_rules(self, include_disabled: bool = True) -> list[AlertRule]:
        """List rules sorted by id."""
        with self._lock:
            rules = [self._rules[k] for k in sorted(self._rules)]
        if not include_disabled:
            rules = [r for r in rules if r.enabled]
        return rules

    def load_rules(self, rules: Iterable[AlertRule | dict[str, Any]]) -> int:
        """Replace all rules. Invalid entries are skipped and logged.

        Returns the number of rules loaded.
        """
        loaded: dict[str, AlertRule] = {}
        for raw in rules:
            if isinstance(raw, AlertRule):
                loaded[raw.id] = raw
                continue
            try:
                rule = AlertRule(**raw)
            except (ValidationError, TypeError) as exc:
                logger.warning("Skipping invalid alert rule %r: %s", raw, exc)
                continue
            loaded[rule.id] = rule
        with self._lock:
            self._rules = loaded
            self._last_triggered = {
                k: v for k, v in self._last_triggered.items() if k in loaded
            }
        return len(loaded)

    def export_rules(self) -> list[dict[str, Any]]:
        return [r.model_dump(mode="json") for r in self.list_rules()]


def default_rules() -> list[AlertRule]:
    """Rules installed when no rules are persisted."""
    channels = ["browser", "email-admin", "sms-admin"]
    return [
        AlertRule(
            id="cpu-high",
            name="CPU usage high",
            metric="cpu_usage",
            operator=Operator.GT,
            threshold=80,
            severity=Severity.HIGH,
            cooldown_seconds=300,
            channels=channels,
        ),
        AlertRule(
            id="memory-high",
            name="Memory usage high",
            metric="memory_usage",
            operator=Operator.GT,
            threshold=85,
            severity=Severity.HIGH,
            cooldown_seconds=300,
            channels=channels,
        ),
        AlertRule(
            id="response-time-slow",
            name="Response time slow",
            metric="response_time",
            operator=Operator.GT,
            threshold=2000,
            severity=Severity.MEDIUM,
            cooldown_seconds=180,
            channels=["browser"],
        ),
        AlertRule(
            id="error-rate-high",
            name="Error rate high",
            metric="error_rate",
            operator=Operator.GT,
            threshold=5,
            severity=Severity.CRITICAL,
            cooldown_seconds=60,
            channels=channels,
        ),
    ]
