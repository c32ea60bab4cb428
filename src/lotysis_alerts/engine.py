"""The alerting engine: every component wired into one explicit instance.

Control flow::

    metrics ticker -> MetricsCollector.collect()
                   -> AlertRuleEngine.evaluate()      (synchronous, same tick)
                   -> AlertStore.create()
                   -> dispatch pool: NotificationDispatcher -> AuditLog
    health ticker  -> HealthChecker.check_health()
                   -> dispatch pool: system-health report when status worsens
    escalation ticker -> EscalationManager.scan()

Notifications never run on a ticker thread: newly triggered alerts are
handed to the engine's dispatch pool so a hung channel cannot stall the
next collection tick.

Usage::

    engine = AlertingEngine(load_config(), store=SqliteStore("state.db"))
    engine.start()
    ...
    engine.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from lotysis_alerts.alerts.store import AlertNotFoundError, AlertStore
from lotysis_alerts.audit.log import AuditLog, AuditSink, JsonlAuditSink
from lotysis_alerts.config import EngineConfig
from lotysis_alerts.escalation.manager import EscalationManager
from lotysis_alerts.health.checker import (
    HealthChecker,
    HealthProbe,
    HttpHealthProbe,
    StoreHealthProbe,
    overall_status,
)
from lotysis_alerts.metrics.collector import MetricProbe, MetricsCollector
from lotysis_alerts.metrics.sources import build_default_probes
from lotysis_alerts.models import (
    Alert,
    AlertRule,
    AlertStatus,
    AuditAction,
    AuditEntry,
    Channel,
    ChannelType,
    DeliveryResult,
    EscalationEvent,
    EscalationRule,
    HealthStatus,
    MetricSnapshot,
    ServiceHealth,
    Severity,
    SystemStatus,
    Template,
)
from lotysis_alerts.notify.channels import ChannelBackend, build_backends
from lotysis_alerts.notify.dispatcher import NotificationDispatcher
from lotysis_alerts.notify.registry import ChannelRegistry, default_channels
from lotysis_alerts.notify.templates import default_templates, health_report_context
from lotysis_alerts.notify.transport import (
    HttpTransport,
    MessageTransport,
    RetryPolicy,
    SmtpTransport,
)
from lotysis_alerts.rules.engine import AlertRuleEngine, default_rules
from lotysis_alerts.scheduler import SchedulerError, Ticker
from lotysis_alerts.store.base import (
    ALERT_RULES,
    ALERTS,
    AUDIT_LOG,
    CHANNELS,
    COLLECTIONS,
    ESCALATION_RULES,
    METRICS,
    TEMPLATES,
    MemoryStore,
    PersistenceError,
    Store,
)

logger = logging.getLogger(__name__)

HEALTH_TEMPLATE_ID = "system-health"

_HEALTH_RANK = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}

_MODELS: dict[str, type] = {
    CHANNELS: Channel,
    TEMPLATES: Template,
    ESCALATION_RULES: EscalationRule,
    AUDIT_LOG: AuditEntry,
    METRICS: MetricSnapshot,
    ALERTS: Alert,
    ALERT_RULES: AlertRule,
}


class EngineError(Exception):
    """Raised for calls on a stopped engine or invalid wiring."""


class AlertingEngine:
    """Explicit alerting engine instance with injected collaborators.

    Every collaborator defaults to a production implementation derived from
    *config*; tests inject fakes (clock, store, probes, transports).
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        store: Store | None = None,
        metric_probes: Mapping[str, MetricProbe] | None = None,
        health_probes: list[HealthProbe] | None = None,
        email_transport: MessageTransport | None = None,
        sms_transport: MessageTransport | None = None,
        http: HttpTransport | None = None,
        backends: Mapping[ChannelType, ChannelBackend] | None = None,
        audit_sinks: list[AuditSink] | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        cfg = self._config
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._store: Store = store if store is not None else MemoryStore()
        self._state_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._health_status = HealthStatus.HEALTHY
        self._stopped = False
        self._tickers: list[Ticker] = []
        self._pending: set[Future[list[DeliveryResult]]] = set()

        if metric_probes is None:
            metric_probes = build_default_probes(cfg)
        self._collector = MetricsCollector(
            dict(metric_probes), capacity=cfg.metrics_capacity, _clock=self._clock,
        )
        self._alerts = AlertStore(capacity=cfg.alert_capacity, _clock=self._clock)
        self._rules = AlertRuleEngine(self._alerts, _clock=self._clock)

        sinks = list(audit_sinks or [])
        if cfg.audit_jsonl:
            sinks.append(JsonlAuditSink(cfg.audit_jsonl))
        self._audit = AuditLog(cfg.audit_capacity, sinks=sinks, _clock=self._clock)

        self._registry = ChannelRegistry(_clock=self._clock)
        if backends is None:
            if http is None:
                retry = RetryPolicy(**cfg.retry) if cfg.retry else None
                http = HttpTransport(retry)
            if email_transport is None and cfg.smtp:
                email_transport = SmtpTransport.from_config(cfg.smtp)
            backends = build_backends(
                http,
                email_transport=email_transport,
                sms_transport=sms_transport,
                timeout=cfg.channel_timeout,
                _clock=self._clock,
            )
        self._dispatcher = NotificationDispatcher(
            self._registry,
            backends,
            channel_timeout=cfg.channel_timeout,
            timestamp_format=cfg.timestamp_format,
            _clock=self._clock,
        )
        self._escalation = EscalationManager(
            self._alerts, self._dispatcher, self._registry, self._audit,
            _clock=self._clock,
        )
        if health_probes is None:
            health_probes = self._default_health_probes()
        self._health = HealthChecker(health_probes, _clock=self._clock)

        self._dispatch_pool = ThreadPoolExecutor(
            max_workers=cfg.dispatch_workers, thread_name_prefix="dispatch",
        )

        self._load_state()
        self._collector.subscribe(self._on_snapshot)

    def _default_health_probes(self) -> list[HealthProbe]:
        cfg = self._config
        probes: list[HealthProbe] = [
            StoreHealthProbe(self._store, timeout=cfg.probe_timeout),
        ]
        if cfg.api_url:
            probes.append(
                HttpHealthProbe("api", cfg.api_url, core=True, timeout=cfg.probe_timeout),
            )
        if cfg.external_api_url:
            probes.append(
                HttpHealthProbe(
                    "external-api", cfg.external_api_url, core=False,
                    timeout=cfg.probe_timeout,
                ),
            )
        return probes

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> Store:
        return self._store

    @property
    def collector(self) -> MetricsCollector:
        return self._collector

    @property
    def health(self) -> HealthChecker:
        return self._health

    @property
    def rules(self) -> AlertRuleEngine:
        return self._rules

    @property
    def alerts(self) -> AlertStore:
        return self._alerts

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def escalation(self) -> EscalationManager:
        return self._escalation

    @property
    def audit(self) -> AuditLog:
        return self._audit

    @property
    def stopped(self) -> bool:
        return self._stopped

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Schedule the metrics, health and escalation tickers."""
        self._ensure_running()
        with self._state_lock:
            if self._tickers:
                raise EngineError("Engine already started")
            cfg = self._config
            tickers = [
                Ticker("metrics", cfg.metrics_interval, self._metrics_tick),
                Ticker("health", cfg.health_interval, self._health_tick),
                Ticker(
                    "escalation", cfg.escalation_interval, self._escalation_tick,
                    run_immediately=False,
                ),
            ]
            started: list[Ticker] = []
            try:
                for ticker in tickers:
                    ticker.start()
                    started.append(ticker)
            except SchedulerError:
                for ticker in started:
                    ticker.stop(timeout=0)
                raise
            self._tickers = tickers
        logger.info("Alerting engine started")

    def stop(self, grace: float | None = None) -> None:
        """Cancel the tickers and give in-flight dispatches *grace* seconds.

        Dispatches still running after the grace period are abandoned.
        """
        with self._state_lock:
            if self._stopped:
                return
            self._stopped = True
            tickers, self._tickers = self._tickers, []
            pending = set(self._pending)

        grace = self._config.shutdown_grace if grace is None else grace
        deadline = time.monotonic() + grace
        for ticker in tickers:
            ticker.stop(timeout=max(0.0, deadline - time.monotonic()))

        if pending:
            _, not_done = wait(pending, timeout=max(0.0, deadline - time.monotonic()))
            if not_done:
                logger.warning(
                    "Abandoning %d in-flight dispatch(es) after %ss grace",
                    len(not_done), grace,
                )
        self._dispatch_pool.shutdown(wait=False, cancel_futures=True)
        self._persist_quietly(*COLLECTIONS)
        logger.info("Alerting engine stopped")

    def _ensure_running(self) -> None:
        if self._stopped:
            raise EngineError("Alerting engine is stopped")

    def _metrics_tick(self) -> None:
        if self._stopped:
            return
        self._collector.collect()
        self._persist_quietly(METRICS)

    def _health_tick(self) -> None:
        if self._stopped:
            return
        self.monitor_health()

    def _escalation_tick(self) -> None:
        if self._stopped:
            return
        self.scan_escalations()

    # ------------------------------------------------------------------
    # Metrics and evaluation
    # ------------------------------------------------------------------

    def collect_now(self) -> MetricSnapshot:
        """Sample metrics now; the snapshot is evaluated before returning."""
        self._ensure_running()
        snapshot = self._collector.collect_now()
        self._persist_quietly(METRICS)
        return snapshot

    def _on_snapshot(self, snapshot: MetricSnapshot) -> None:
        if not self._stopped:
            self.evaluate(snapshot)

    def evaluate(self, snapshot: MetricSnapshot) -> list[Alert]:
        """Evaluate rules against *snapshot* and schedule notifications.

        Returns the newly triggered alerts. Notifications run on the
        dispatch pool; use ``wait_for_dispatches()`` to block on them.
        """
        self._ensure_running()
        triggered = self._rules.evaluate(snapshot)
        for alert in triggered:
            self._schedule_dispatch(alert)
        if triggered:
            self._persist_quietly(ALERTS)
        return triggered

    def _schedule_dispatch(self, alert: Alert) -> None:
        channels, unknown = self._registry.resolve_channels(
            alert.metadata.get("channels", []),
        )
        if unknown:
            logger.warning(
                "Alert %s targets unknown channels: %s", alert.id, ", ".join(unknown),
            )
        channels = [c for c in channels if c.enabled]
        if not channels:
            logger.info("Alert %s has no enabled channels", alert.id)
            return
        self._submit(f"alert {alert.id}", self._deliver_and_audit, alert, channels)

    def _submit(
        self, label: str, fn: Callable[..., list[DeliveryResult]], *args: Any,
    ) -> None:
        try:
            future = self._dispatch_pool.submit(fn, *args)
        except RuntimeError:
            logger.warning("Dispatch pool closed, %s not notified", label)
            return
        with self._state_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[list[DeliveryResult]]) -> None:
        with self._state_lock:
            self._pending.discard(future)

    def _deliver_and_audit(
        self, alert: Alert, channels: list[Channel],
    ) -> list[DeliveryResult]:
        try:
            results = self._dispatcher.dispatch(alert, channels)
            self._audit.record_deliveries(alert.id, results)
            self._persist_quietly(AUDIT_LOG, CHANNELS)
            return results
        except Exception:
            logger.exception("Dispatch of alert %s failed", alert.id)
            raise

    def wait_for_dispatches(self, timeout: float | None = None) -> bool:
        """Block until scheduled dispatches finish. Returns False on timeout."""
        with self._state_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # ------------------------------------------------------------------
    # Alert lifecycle
    # ------------------------------------------------------------------

    def acknowledge(self, alert_id: str, actor: str) -> Alert | None:
        """Acknowledge an active alert. None means nothing changed."""
        self._ensure_running()
        updated = self._alerts.acknowledge(alert_id, actor)
        if updated is None:
            return None
        self._audit.log(AuditAction.ACKNOWLEDGED, alert_id, user_id=actor)
        self._persist(ALERTS, AUDIT_LOG)
        return updated

    def resolve(self, alert_id: str, actor: str | None = None) -> Alert | None:
        """Resolve an alert. Idempotent: None when already resolved."""
        self._ensure_running()
        updated = self._alerts.resolve(alert_id)
        if updated is None:
            return None
        self._audit.log(AuditAction.RESOLVED, alert_id, user_id=actor)
        self._persist(ALERTS, AUDIT_LOG)
        return updated

    def dispatch(
        self, alert: Alert | str, channel_ids: list[str],
    ) -> list[DeliveryResult]:
        """Deliver *alert* to the named channels and audit every outcome.

        Returns one result per requested id, in order. Unknown and
        disabled channels come back as failed results. Never raises for a
        channel failure.
        """
        self._ensure_running()
        if isinstance(alert, str):
            found = self._alerts.get(alert)
            if found is None:
                raise AlertNotFoundError(f"Alert '{alert}' not found")
            alert = found

        now = self._clock()
        slots: list[DeliveryResult | Channel] = []
        for cid in channel_ids:
            channel = self._registry.get_channel(cid)
            if channel is None:
                slots.append(DeliveryResult(
                    channel_id=cid, success=False, error="unknown channel",
                    delivered_at=now,
                ))
            elif not channel.enabled:
                slots.append(DeliveryResult(
                    channel_id=cid, channel_name=channel.name,
                    channel_type=channel.type, success=False,
                    error="channel disabled", delivered_at=now,
                ))
            else:
                slots.append(channel)

        deliverable = [s for s in slots if isinstance(s, Channel)]
        delivered = iter(self._dispatcher.dispatch(alert, deliverable))
        results = [
            next(delivered) if isinstance(s, Channel) else s for s in slots
        ]
        self._audit.record_deliveries(alert.id, results)
        self._persist_quietly(AUDIT_LOG, CHANNELS)
        return results

    def test_channel(self, channel_id: str) -> DeliveryResult | None:
        self._ensure_running()
        result = self._dispatcher.test_channel(channel_id)
        if result is not None:
            self._persist_quietly(CHANNELS)
        return result

    # ------------------------------------------------------------------
    # Health, escalation, status
    # ------------------------------------------------------------------

    def check_health(self) -> dict[str, ServiceHealth]:
        self._ensure_running()
        return self._health.check_health()

    def monitor_health(self) -> HealthStatus:
        """Probe every service and schedule a health report if status worsened.

        The report goes out once per transition to a worse status (healthy
        to degraded, degraded to unhealthy), not on every check.
        """
        results = self.check_health()
        status = overall_status(results.values())
        with self._state_lock:
            previous, self._health_status = self._health_status, status
        if status != HealthStatus.HEALTHY:
            logger.warning("System health is %s", status)
        if _HEALTH_RANK[status] > _HEALTH_RANK[previous]:
            self._submit("health report", self._send_health_report, results)
        return status

    def report_health(
        self, results: Mapping[str, ServiceHealth] | None = None,
    ) -> list[DeliveryResult]:
        """Send the system-health report to every enabled channel it applies to.

        Uses the latest health results unless *results* is given.
        """
        self._ensure_running()
        return self._send_health_report(
            self._health.last_results if results is None else results,
        )

    def _send_health_report(
        self, results: Mapping[str, ServiceHealth],
    ) -> list[DeliveryResult]:
        channels = self._registry.channels_for_template(HEALTH_TEMPLATE_ID)
        if not channels:
            logger.info("No enabled channels accept the system health report")
            return []

        status = overall_status(results.values())
        now = self._clock()
        report = Alert(
            id=f"health-{now:%Y%m%d%H%M%S}",
            rule_id=HEALTH_TEMPLATE_ID,
            rule_name="System health",
            message=f"System health is {status}",
            severity={
                HealthStatus.HEALTHY: Severity.LOW,
                HealthStatus.DEGRADED: Severity.HIGH,
                HealthStatus.UNHEALTHY: Severity.CRITICAL,
            }[status],
            triggered_at=now,
            metric_value=len(results),
            threshold=0,
        )
        context = health_report_context(
            str(status), results, len(self._alerts.list(AlertStatus.ACTIVE)), now,
        )
        try:
            delivered = self._dispatcher.dispatch(
                report, channels, template_id=HEALTH_TEMPLATE_ID, context=context,
            )
            self._audit.record_deliveries(report.id, delivered)
            self._persist_quietly(AUDIT_LOG, CHANNELS)
        except Exception:
            logger.exception("Sending the system health report failed")
            raise
        return delivered

    def scan_escalations(self) -> list[EscalationEvent]:
        self._ensure_running()
        events = self._escalation.scan()
        if events:
            self._persist_quietly(ALERTS, AUDIT_LOG, CHANNELS)
        return events

    def system_status(self, refresh: bool = False) -> SystemStatus:
        """Combine service health with open alert severities.

        unhealthy: a service is unhealthy or a critical alert is active.
        degraded: a service is degraded or a high alert is active.
        """
        services = self.check_health() if refresh else self._health.last_results
        active = self._alerts.list(AlertStatus.ACTIVE)
        by_severity: dict[str, int] = {}
        for alert in active:
            by_severity[alert.severity] = by_severity.get(alert.severity, 0) + 1

        status = overall_status(services.values())
        if by_severity.get(Severity.CRITICAL):
            status = HealthStatus.UNHEALTHY
        elif by_severity.get(Severity.HIGH) and status == HealthStatus.HEALTHY:
            status = HealthStatus.DEGRADED

        return SystemStatus(
            status=status,
            services=services,
            active_alerts=len(active),
            active_by_severity=by_severity,
            last_snapshot=self._collector.latest(),
            checked_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _serialise(self, key: str) -> list[dict[str, Any]]:
        if key == CHANNELS:
            return self._registry.export_channels()
        if key == TEMPLATES:
            return self._registry.export_templates()
        if key == ESCALATION_RULES:
            return self._escalation.export_rules()
        if key == AUDIT_LOG:
            return self._audit.export()
        if key == METRICS:
            return self._collector.export()
        if key == ALERTS:
            return self._alerts.export()
        if key == ALERT_RULES:
            return self._rules.export_rules()
        raise EngineError(f"Unknown collection '{key}'")

    def _persist(self, *keys: str) -> None:
        # Snapshot and save together so an older snapshot never lands last.
        with self._persist_lock:
            for key in keys:
                self._store.save(key, self._serialise(key))

    def _persist_quietly(self, *keys: str) -> None:
        try:
            self._persist(*keys)
        except PersistenceError as exc:
            logger.warning("Persisting %s failed: %s", ", ".join(keys), exc)

    def persist(self) -> None:
        """Save every collection. Raises PersistenceError on failure."""
        self._persist(*COLLECTIONS)

    def _load_state(self) -> None:
        loaded = {key: _valid_items(key, self._store.load(key)) for key in COLLECTIONS}

        self._registry.load_channels(
            loaded[CHANNELS] or default_channels(self._config.browser_webhook_url),
        )
        self._registry.load_templates(loaded[TEMPLATES] or default_templates())
        self._rules.load_rules(loaded[ALERT_RULES] or default_rules())
        self._escalation.load_rules(loaded[ESCALATION_RULES])
        self._audit.load(loaded[AUDIT_LOG])
        self._collector.load(loaded[METRICS])
        self._alerts.load(loaded[ALERTS])

    def export_configuration(self) -> dict[str, Any]:
        """Serialise all seven collections plus an export timestamp."""
        data: dict[str, Any] = {key: self._serialise(key) for key in COLLECTIONS}
        data["exportedAt"] = self._clock().isoformat()
        return data

    def import_configuration(self, data: Mapping[str, Any]) -> bool:
        """Replace the collections present in *data*.

        Everything is validated before anything is applied; returns False
        (and changes nothing) if any entry is invalid.
        """
        self._ensure_running()
        if not isinstance(data, Mapping):
            logger.warning("Import rejected: expected a mapping")
            return False

        parsed: dict[str, list[Any]] = {}
        for key in COLLECTIONS:
            if key not in data:
                continue
            items = data[key]
            if not isinstance(items, list):
                logger.warning("Import rejected: '%s' is not a list", key)
                return False
            model = _MODELS[key]
            try:
                parsed[key] = [model(**item) for item in items]
            except (ValidationError, TypeError) as exc:
                logger.warning("Import rejected: invalid '%s' entry: %s", key, exc)
                return False

        if CHANNELS in parsed:
            self._registry.load_channels(parsed[CHANNELS])
        if TEMPLATES in parsed:
            self._registry.load_templates(parsed[TEMPLATES])
        if ESCALATION_RULES in parsed:
            self._escalation.load_rules(parsed[ESCALATION_RULES])
        if AUDIT_LOG in parsed:
            self._audit.load(parsed[AUDIT_LOG])
        if METRICS in parsed:
            self._collector.load(parsed[METRICS])
        if ALERTS in parsed:
            self._alerts.load(parsed[ALERTS])
        if ALERT_RULES in parsed:
            self._rules.load_rules(parsed[ALERT_RULES])

        self._persist(*parsed)
        logger.info("Imported %s", ", ".join(parsed) or "nothing")
        return True


def _valid_items(key: str, items: list[dict[str, Any]]) -> list[Any]:
    """Parse stored items, skipping (and logging) entries that fail validation."""
    model = _MODELS[key]
    parsed = []
    for raw in items:
        try:
            parsed.append(model(**raw))
        except (ValidationError, TypeError) as exc:
            logger.warning("Skipping invalid stored %s entry: %s", key, exc)
    return parsed
