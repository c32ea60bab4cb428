"""Tests for the bounded append-only audit log."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from lotysis_alerts.audit.log import AuditLog, AuditSinkWarning, JsonlAuditSink
from lotysis_alerts.models import AuditAction, AuditEntry, ChannelType, DeliveryResult


class BrokenSink:
    def ship(self, entry: AuditEntry) -> None:
        raise ConnectionError("sink unreachable")


class ListSink:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    def ship(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


class TestAuditLog:
    def test_newest_first(self, clock):
        log = AuditLog(_clock=clock)
        log.log(AuditAction.SENT, "a1", channel_id="browser")
        clock.advance(seconds=1)
        log.log(AuditAction.ACKNOWLEDGED, "a1", user_id="admin")
        entries = log.query()
        assert [e.action for e in entries] == [AuditAction.ACKNOWLEDGED, AuditAction.SENT]
        assert entries[0].user_id == "admin"
        assert entries[1].timestamp == datetime(2024, 6, 1, 12, tzinfo=UTC)

    def test_capacity_drops_oldest(self, clock):
        log = AuditLog(capacity=3, _clock=clock)
        for i in range(5):
            log.log(AuditAction.SENT, f"a{i}")
        assert len(log) == 3
        assert [e.alert_id for e in log.query()] == ["a4", "a3", "a2"]

    def test_filters_and_limit(self, clock):
        log = AuditLog(_clock=clock)
        log.log(AuditAction.SENT, "a1")
        log.log(AuditAction.FAILED, "a1")
        log.log(AuditAction.SENT, "a2")
        assert [e.alert_id for e in log.query(action=AuditAction.SENT)] == ["a2", "a1"]
        assert [e.action for e in log.query(alert_id="a1")] == [
            AuditAction.FAILED, AuditAction.SENT,
        ]
        assert len(log.query(limit=1)) == 1

    def test_entries_are_frozen(self, clock):
        entry = AuditLog(_clock=clock).log(AuditAction.SENT, "a1")
        with pytest.raises(ValidationError):
            entry.alert_id = "other"

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            AuditLog(capacity=0)

    def test_record_deliveries(self, clock):
        log = AuditLog(_clock=clock)
        results = [
            DeliveryResult(
                channel_id="browser", channel_name="Browser",
                channel_type=ChannelType.WEBHOOK, success=True,
                delivered_at=clock(), duration_ms=12.345,
            ),
            DeliveryResult(
                channel_id="sms-admin", channel_name="SMS", success=False,
                error="No sms transport configured", delivered_at=clock(),
            ),
        ]
        sent, failed = log.record_deliveries("a1", results)
        assert sent.action == AuditAction.SENT
        assert sent.details == {"channel_name": "Browser", "duration_ms": 12.3}
        assert failed.action == AuditAction.FAILED
        assert failed.channel_id == "sms-admin"
        assert failed.details["error"] == "No sms transport configured"

    def test_export_load_round_trip(self, clock):
        log = AuditLog(_clock=clock)
        log.log(AuditAction.SENT, "a1", details={"channel_name": "x"})
        clock.advance(seconds=1)
        log.log(AuditAction.RESOLVED, "a1", user_id="admin")

        other = AuditLog()
        other.load(log.export())
        assert other.query() == log.query()

    def test_load_truncates_to_capacity(self, clock):
        log = AuditLog(_clock=clock)
        for i in range(4):
            log.log(AuditAction.SENT, f"a{i}")
        small = AuditLog(capacity=2)
        small.load(log.export())
        assert [e.alert_id for e in small.query()] == ["a3", "a2"]


class TestSinks:
    def test_sink_receives_entries(self, clock):
        sink = ListSink()
        log = AuditLog(sinks=[sink], _clock=clock)
        entry = log.log(AuditAction.SENT, "a1")
        assert sink.entries == [entry]

    def test_broken_sink_warns_but_records(self, clock):
        log = AuditLog(sinks=[BrokenSink()], _clock=clock)
        with pytest.warns(AuditSinkWarning, match="sink unreachable"):
            log.log(AuditAction.SENT, "a1")
        assert len(log) == 1

    def test_jsonl_sink(self, clock, tmp_path: Path):
        path = tmp_path / "audit.jsonl"
        log = AuditLog(sinks=[JsonlAuditSink(path)], _clock=clock)
        log.log(AuditAction.SENT, "a1", channel_id="browser")
        log.log(AuditAction.FAILED, "a2")
        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert [line["alert_id"] for line in lines] == ["a1", "a2"]
        assert lines[0]["action"] == "sent"
        assert lines[0]["channel_id"] == "browser"
