"""End-to-end tests for the wired alerting engine (fake clock, store and backends)."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator

import pytest

from lotysis_alerts.alerts.store import AlertNotFoundError
from lotysis_alerts.config import EngineConfig
from lotysis_alerts.engine import AlertingEngine, EngineError
from lotysis_alerts.health.checker import CallableHealthProbe
from lotysis_alerts.models import (
    AlertRuleUpdateRequest,
    AlertStatus,
    AuditAction,
    Channel,
    ChannelTestStatus,
    ChannelType,
    EscalationConditions,
    EscalationRule,
    HealthStatus,
    MetricSnapshot,
    Notification,
    Severity,
)
from lotysis_alerts.notify.channels import ChannelDeliveryError
from lotysis_alerts.store.base import ALERTS, CHANNELS, MemoryStore, PersistenceError

BROWSER_URL = "http://browser.local/hook"


class FakeBackend:
    """Records deliveries; fails for channels configured with ``fail: true``
    and blocks until released for ``hang: true``."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, Notification]] = []
        self.release = threading.Event()
        self._lock = threading.Lock()

    def deliver(self, notification: Notification, channel: Channel) -> None:
        if channel.config.get("hang"):
            self.release.wait(5)
        if channel.config.get("fail"):
            raise ChannelDeliveryError("HTTP 500 from webhook")
        with self._lock:
            self.sent.append((channel.id, notification))

    def channel_ids(self) -> list[str]:
        with self._lock:
            return [cid for cid, _ in self.sent]


class FlakyStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def save(self, key, items) -> None:
        if self.fail:
            raise PersistenceError("disk full")
        super().save(key, items)


class GatedStore(MemoryStore):
    """Blocks the first gated save of the alerts collection until released."""

    def __init__(self) -> None:
        super().__init__()
        self.gated = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def save(self, key, items) -> None:
        if key == ALERTS and self.gated:
            self.gated = False
            self.entered.set()
            self.release.wait(5)
        super().save(key, items)


class Harness:
    def __init__(self, clock, store=None, health_probes=None, **config) -> None:
        self.values = {"cpu_usage": 10.0, "error_rate": 0.0}
        self.backend = FakeBackend()
        self.store = store if store is not None else MemoryStore()
        config.setdefault("browser_webhook_url", BROWSER_URL)
        self.engine = AlertingEngine(
            EngineConfig(**config),
            store=self.store,
            metric_probes={
                "cpu_usage": lambda: self.values["cpu_usage"],
                "error_rate": lambda: self.values["error_rate"],
            },
            health_probes=health_probes or [],
            backends={t: self.backend for t in ChannelType},
            _clock=clock,
        )

    def sample(self, **values: float):
        self.values.update(values)
        snapshot = self.engine.collect_now()
        assert self.engine.wait_for_dispatches(timeout=5)
        return snapshot


@pytest.fixture()
def make(clock) -> Iterator:
    created: list[Harness] = []

    def _make(**kwargs) -> Harness:
        harness = Harness(clock, **kwargs)
        created.append(harness)
        return harness

    yield _make
    for harness in created:
        harness.backend.release.set()
        harness.engine.stop(grace=1)


class TestScenarios:
    def test_cooldown_suppresses_repeat_triggers(self, clock, make):
        h = make()
        h.sample(cpu_usage=85)
        [a1] = h.engine.alerts.list()
        assert a1.status == AlertStatus.ACTIVE
        assert a1.severity == Severity.HIGH
        assert h.backend.channel_ids() == ["browser"]

        clock.advance(minutes=1)
        h.sample(cpu_usage=90)
        assert len(h.engine.alerts) == 1

        clock.advance(minutes=5)
        h.sample(cpu_usage=90)
        assert len(h.engine.alerts) == 2
        assert h.backend.channel_ids() == ["browser", "browser"]

    def test_acknowledge_then_resolve(self, clock, make):
        h = make()
        h.sample(cpu_usage=85)
        [a1] = h.engine.alerts.list()

        clock.advance(minutes=1)
        acked = h.engine.acknowledge(a1.id, "admin")
        assert acked.status == AlertStatus.ACKNOWLEDGED
        clock.advance(minutes=1)
        resolved = h.engine.resolve(a1.id, "admin")
        assert resolved.status == AlertStatus.RESOLVED
        assert h.engine.resolve(a1.id) is None
        assert h.engine.acknowledge(a1.id, "admin") is None

        actions = [e.action for e in h.engine.audit.query(alert_id=a1.id)]
        assert actions == [AuditAction.RESOLVED, AuditAction.ACKNOWLEDGED, AuditAction.SENT]
        assert h.store.load(ALERTS)[0]["status"] == "resolved"

    def test_dispatch_isolates_failing_channel(self, clock, make):
        h = make()
        h.engine.registry.add_channel(Channel(
            id="good", name="Good", type=ChannelType.WEBHOOK, config={"url": "http://good"},
        ))
        h.engine.registry.add_channel(Channel(
            id="bad", name="Bad", type=ChannelType.WEBHOOK, config={"url": "http://bad", "fail": True},
        ))
        h.sample(cpu_usage=85)
        [a1] = h.engine.alerts.list()

        results = h.engine.dispatch(a1, ["good", "bad"])
        assert [(r.channel_id, r.success) for r in results] == [("good", True), ("bad", False)]
        entries = h.engine.audit.query(limit=2, alert_id=a1.id)
        assert {(e.channel_id, e.action) for e in entries} == {
            ("good", AuditAction.SENT), ("bad", AuditAction.FAILED),
        }

    def test_one_escalation_per_window(self, clock, make):
        h = make(escalation_interval=60)
        h.engine.escalation.add_rule(EscalationRule(
            id="critical-10m",
            name="Critical unacknowledged for 10 minutes",
            conditions=EscalationConditions(severity=[Severity.CRITICAL], duration_minutes=10),
        ))
        h.sample(error_rate=12)
        [a1] = h.engine.alerts.list()
        assert a1.severity == Severity.CRITICAL

        clock.advance(minutes=11)
        [event] = h.engine.scan_escalations()
        assert event.alert_id == a1.id
        assert event.channel_ids == ["browser"]
        for _ in range(5):
            clock.advance(minutes=1)
            assert h.engine.scan_escalations() == []
        assert len(h.engine.audit.query(action=AuditAction.ESCALATED)) == 1


class TestDispatch:
    def test_unknown_and_disabled_channels_reported(self, clock, make):
        h = make()
        h.sample(cpu_usage=85)
        [a1] = h.engine.alerts.list()
        results = h.engine.dispatch(a1.id, ["browser", "nope", "email-admin"])
        assert [(r.channel_id, r.success, r.error) for r in results] == [
            ("browser", True, None),
            ("nope", False, "unknown channel"),
            ("email-admin", False, "channel disabled"),
        ]
        assert len(h.engine.audit.query(alert_id=a1.id)) == 4

    def test_unknown_alert(self, make):
        with pytest.raises(AlertNotFoundError):
            make().engine.dispatch("missing", ["browser"])

    def test_no_enabled_channels_means_no_delivery(self, clock, make):
        h = make(browser_webhook_url=None)
        h.sample(cpu_usage=85)
        assert len(h.engine.alerts) == 1
        assert h.backend.sent == []

    def test_test_channel(self, make):
        h = make()
        result = h.engine.test_channel("browser")
        assert result.success
        assert h.engine.registry.get_channel("browser").test_status == ChannelTestStatus.SUCCESS
        assert h.engine.test_channel("nope") is None


class TestStatus:
    def test_status_from_alert_severities(self, clock, make):
        h = make()
        assert h.engine.system_status().status == HealthStatus.HEALTHY

        h.sample(cpu_usage=85)
        status = h.engine.system_status()
        assert status.status == HealthStatus.DEGRADED
        assert status.active_alerts == 1
        assert status.active_by_severity == {"high": 1}
        assert status.last_snapshot.cpu_usage == 85

        h.sample(error_rate=50)
        assert h.engine.system_status().status == HealthStatus.UNHEALTHY

    def test_status_from_health(self, make):
        h = make(health_probes=[
            CallableHealthProbe("database", lambda: True, core=True),
            CallableHealthProbe("api", lambda: False, core=True),
        ])
        status = h.engine.system_status(refresh=True)
        assert status.status == HealthStatus.UNHEALTHY
        assert status.services["api"].status == HealthStatus.UNHEALTHY


class TestPersistence:
    def test_defaults_installed_on_empty_store(self, make):
        h = make()
        assert {r.id for r in h.engine.rules.list_rules()} == {
            "cpu-high", "memory-high", "response-time-slow", "error-rate-high",
        }
        assert h.engine.registry.get_channel("browser").enabled is True
        h.engine.persist()
        assert len(h.store.load(CHANNELS)) == 5

    def test_state_survives_restart(self, clock, make):
        store = MemoryStore()
        first = make(store=store)
        first.sample(cpu_usage=85)
        first.engine.stop()

        clock.advance(minutes=2)
        second = make(store=store)
        assert len(second.engine.alerts) == 1
        assert len(second.engine.audit) == 1
        second.sample(cpu_usage=95)
        assert len(second.engine.alerts) == 1

    def test_invalid_stored_entries_skipped(self, make):
        store = MemoryStore()
        store.save(ALERTS, [{"bogus": True}])
        h = make(store=store)
        assert len(h.engine.alerts) == 0

    def test_quiet_persistence_failure_during_evaluation(self, clock, make):
        store = FlakyStore()
        h = make(store=store)
        store.fail = True
        h.sample(cpu_usage=85)
        [a1] = h.engine.alerts.list()
        with pytest.raises(PersistenceError):
            h.engine.acknowledge(a1.id, "admin")

    def test_export_import_round_trip(self, clock, make):
        source = make()
        source.sample(cpu_usage=85)
        data = source.engine.export_configuration()
        assert "exportedAt" in data
        assert len(data["alerts"]) == 1

        target = make()
        assert target.engine.import_configuration(data) is True
        assert target.engine.alerts.list() == source.engine.alerts.list()
        assert target.engine.rules.list_rules() == source.engine.rules.list_rules()
        assert len(target.store.load(ALERTS)) == 1

    @pytest.mark.parametrize("data", [
        {"alerts": [{"bogus": 1}]},
        {"alertRules": "not-a-list"},
        ["not", "a", "mapping"],
    ])
    def test_invalid_import_changes_nothing(self, make, data):
        h = make()
        before = h.engine.export_configuration()
        assert h.engine.import_configuration(data) is False
        after = h.engine.export_configuration()
        before.pop("exportedAt")
        after.pop("exportedAt")
        assert after == before


class TestLifecycle:
    def test_stopped_engine_rejects_calls(self, make):
        h = make()
        h.engine.stop()
        h.engine.stop()
        assert h.engine.stopped
        with pytest.raises(EngineError):
            h.engine.collect_now()
        with pytest.raises(EngineError):
            h.engine.start()

    def test_tickers_collect_in_background(self, make):
        h = make(metrics_interval=0.05, health_interval=0.05, escalation_interval=0.05)
        h.engine.start()
        with pytest.raises(EngineError):
            h.engine.start()
        deadline = time.monotonic() + 5
        while len(h.engine.collector.history()) < 2 and time.monotonic() < deadline:
            time.sleep(0.02)
        h.engine.stop(grace=1)
        assert len(h.engine.collector.history()) >= 2

    def test_stop_abandons_hung_dispatch_after_grace(self, make, caplog):
        h = make()
        h.engine.registry.update_channel("browser", config={"url": BROWSER_URL, "hang": True})
        h.values["cpu_usage"] = 85
        h.engine.collect_now()

        start = time.monotonic()
        with caplog.at_level(logging.WARNING, logger="lotysis_alerts.engine"):
            h.engine.stop(grace=0.2)
        elapsed = time.monotonic() - start

        assert 0.15 <= elapsed < 1.0
        assert "Abandoning 1 in-flight dispatch(es) after 0.2s grace" in caplog.text
        assert h.engine.stopped

    def test_health_ticker_sends_report(self, make):
        h = make(
            metrics_interval=60, health_interval=0.05, escalation_interval=60,
            health_probes=[CallableHealthProbe("api", lambda: False, core=True)],
        )
        h.engine.registry.update_channel("email-admin", enabled=True)
        h.engine.start()
        deadline = time.monotonic() + 5
        while "email-admin" not in h.backend.channel_ids() and time.monotonic() < deadline:
            time.sleep(0.02)
        h.engine.stop(grace=1)
        assert h.backend.channel_ids().count("email-admin") == 1


class TestHealthReport:
    def _make(self, make, state: dict[str, bool]) -> Harness:
        h = make(health_probes=[
            CallableHealthProbe("database", lambda: state["database"], core=True),
            CallableHealthProbe("external-api", lambda: state["api"]),
        ])
        h.engine.registry.update_channel("email-admin", enabled=True)
        return h

    def test_sent_once_per_worsening(self, make):
        state = {"database": True, "api": True}
        h = self._make(make, state)
        assert h.engine.monitor_health() == HealthStatus.HEALTHY

        state["api"] = False
        assert h.engine.monitor_health() == HealthStatus.DEGRADED
        assert h.engine.monitor_health() == HealthStatus.DEGRADED
        assert h.engine.wait_for_dispatches(timeout=5)
        [(channel_id, notification)] = h.backend.sent
        assert channel_id == "email-admin"
        assert notification.message.subject == "System health: degraded"
        assert "- external-api: degraded" in notification.message.body

        state["database"] = False
        assert h.engine.monitor_health() == HealthStatus.UNHEALTHY
        assert h.engine.wait_for_dispatches(timeout=5)
        subjects = [n.message.subject for _, n in h.backend.sent]
        assert subjects == ["System health: degraded", "System health: unhealthy"]

    def test_recovery_does_not_report(self, make):
        state = {"database": True, "api": False}
        h = self._make(make, state)
        h.engine.monitor_health()
        state["api"] = True
        assert h.engine.monitor_health() == HealthStatus.HEALTHY
        assert h.engine.wait_for_dispatches(timeout=5)
        assert len(h.backend.sent) == 1

    def test_only_applicable_channels_receive_report(self, make):
        h = self._make(make, {"database": True, "api": False})
        results = h.engine.report_health(h.engine.check_health())
        # The browser webhook is enabled but the report applies to email, Slack, Teams.
        assert [r.channel_id for r in results] == ["email-admin"]
        entries = h.engine.audit.query(action=AuditAction.SENT)
        assert [e.channel_id for e in entries] == ["email-admin"]
        assert entries[0].alert_id.startswith("health-")

    def test_no_applicable_channels(self, make):
        h = make()
        assert h.engine.report_health() == []
        assert h.backend.sent == []


class TestConcurrency:
    def test_acknowledge_races_evaluation_and_scan(self, clock, make):
        h = make()
        h.engine.rules.update_rule("cpu-high", AlertRuleUpdateRequest(cooldown_seconds=0))
        h.engine.escalation.add_rule(EscalationRule(
            id="high-10m",
            name="High unacknowledged for 10 minutes",
            conditions=EscalationConditions(severity=[Severity.HIGH], duration_minutes=10),
        ))
        for _ in range(30):
            h.sample(cpu_usage=85)
        seeded = [a.id for a in h.engine.alerts.list()]
        assert len(seeded) == 30
        clock.advance(minutes=11)

        barrier = threading.Barrier(3, timeout=5)
        errors: list[BaseException] = []

        def acknowledge_all() -> None:
            for alert_id in seeded:
                h.engine.acknowledge(alert_id, "admin")

        def evaluate() -> None:
            for _ in range(30):
                h.engine.evaluate(MetricSnapshot(timestamp=clock(), cpu_usage=85))

        def scan() -> None:
            for _ in range(10):
                h.engine.scan_escalations()

        def run(fn) -> None:
            try:
                barrier.wait()
                fn()
            except BaseException as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=run, args=(fn,))
            for fn in (acknowledge_all, evaluate, scan)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert errors == []
        assert h.engine.wait_for_dispatches(timeout=10)
        alerts = {a.id: a for a in h.engine.alerts.list()}
        assert len(alerts) == 60
        for alert_id in seeded:
            assert alerts[alert_id].status == AlertStatus.ACKNOWLEDGED
            assert alerts[alert_id].acknowledged_by == "admin"
        acks = h.engine.audit.query(limit=1000, action=AuditAction.ACKNOWLEDGED)
        assert len(acks) == 30
        stored = {a["id"]: a["status"] for a in h.store.load(ALERTS)}
        assert all(stored[alert_id] == "acknowledged" for alert_id in seeded)

    def test_older_snapshot_never_saved_last(self, make):
        store = GatedStore()
        h = make(store=store)
        h.sample(cpu_usage=85, error_rate=12)
        first, second = h.engine.alerts.list()

        store.gated = True
        t1 = threading.Thread(target=h.engine.acknowledge, args=(first.id, "alice"))
        t2 = threading.Thread(target=h.engine.acknowledge, args=(second.id, "bob"))
        t1.start()
        try:
            assert store.entered.wait(5)
            t2.start()
            time.sleep(0.1)
        finally:
            store.release.set()
        t1.join(5)
        t2.join(5)

        statuses = {a["id"]: a["status"] for a in store.load(ALERTS)}
        assert statuses == {first.id: "acknowledged", second.id: "acknowledged"}
