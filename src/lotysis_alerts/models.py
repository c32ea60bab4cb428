"""Core data models for the alerting engine.

Defines the schemas for:
- Metric snapshots (what the system looked like at one instant)
- Alert rules (threshold conditions over one metric)
- Alerts (materialised rule breaches with a lifecycle)
- Channels and templates (where and how notifications go)
- Escalation rules (what happens when nobody acknowledges)
- Audit entries (what happened, for traceability)
- Delivery, health and escalation results
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class Severity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Operator(enum.StrEnum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"


class AlertStatus(enum.StrEnum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ChannelType(enum.StrEnum):
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"
    SLACK = "slack"
    TEAMS = "teams"
    DISCORD = "discord"


class ChannelTestStatus(enum.StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class AuditAction(enum.StrEnum):
    SENT = "sent"
    FAILED = "failed"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    ACKNOWLEDGED = "acknowledged"


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# --- Metrics ---

METRIC_FIELDS: tuple[str, ...] = (
    "cpu_usage",
    "memory_usage",
    "response_time",
    "error_rate",
    "active_users",
    "db_connections",
    "api_calls",
)


class MetricSnapshot(BaseModel):
    """One timestamped sample of every tracked metric.

    Immutable once created. ``errors`` maps a metric name to the message of
    the probe that failed while producing this snapshot.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    response_time: float = 0.0
    error_rate: float = 0.0
    active_users: float = 0.0
    db_connections: float = 0.0
    api_calls: float = 0.0
    errors: dict[str, str] = Field(default_factory=dict)

    def value(self, metric: str) -> float:
        """Return the value of a named metric field.

        Raises KeyError for names that are not metric fields.
        """
        if metric not in METRIC_FIELDS:
            raise KeyError(metric)
        return getattr(self, metric)


# --- Alert rules ---


class AlertRule(BaseModel):
    """A named threshold condition over one metric."""

    id: str = Field(default_factory=lambda: _new_id("rule"))
    name: str
    metric: str
    operator: Operator
    threshold: float
    severity: Severity
    enabled: bool = True
    cooldown_seconds: float = Field(300.0, ge=0)
    channels: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class AlertRuleCreateRequest(BaseModel):
    """Input for creating an alert rule."""

    name: str
    metric: str
    operator: Operator
    threshold: float
    severity: Severity
    enabled: bool = True
    cooldown_seconds: float = Field(300.0, ge=0)
    channels: list[str] = Field(default_factory=list)


class AlertRuleUpdateRequest(BaseModel):
    """Input for updating an alert rule. All fields optional."""

    name: str | None = None
    metric: str | None = None
    operator: Operator | None = None
    threshold: float | None = None
    severity: Severity | None = None
    enabled: bool | None = None
    cooldown_seconds: float | None = Field(default=None, ge=0)
    channels: list[str] | None = None


# --- Alerts ---


class Alert(BaseModel):
    """A materialised rule breach.

    Status moves active -> acknowledged -> resolved, or active -> resolved.
    Resolved is terminal.
    """

    id: str = Field(default_factory=lambda: _new_id("alert"))
    rule_id: str
    rule_name: str
    message: str
    severity: Severity
    status: AlertStatus = AlertStatus.ACTIVE
    triggered_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    metric_value: float
    threshold: float
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- Channels and templates ---


class Channel(BaseModel):
    """A notification transport target.

    ``config`` is type-specific (webhook URL, Slack channel, SMTP recipients...).
    """

    id: str = Field(default_factory=lambda: _new_id("chn"))
    name: str
    type: ChannelType
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)
    test_status: ChannelTestStatus | None = None
    last_used: datetime | None = None


class Template(BaseModel):
    """Subject/body text with ``{{variable}}`` placeholders."""

    id: str = Field(default_factory=lambda: _new_id("tpl"))
    name: str
    subject: str
    body: str
    variables: list[str] = Field(default_factory=list)
    channel_types: list[ChannelType] = Field(default_factory=list)

    def applies_to(self, channel_type: ChannelType) -> bool:
        """An empty ``channel_types`` list applies to every channel type."""
        return not self.channel_types or channel_type in self.channel_types


class RenderedMessage(BaseModel):
    """A template after placeholder substitution."""

    subject: str
    body: str
    missing_variables: list[str] = Field(default_factory=list)


class Notification(BaseModel):
    """Everything a channel backend needs to deliver one message."""

    alert: Alert
    message: RenderedMessage
    extra_recipients: list[str] = Field(default_factory=list)


class DeliveryResult(BaseModel):
    """Outcome of delivering one notification to one channel."""

    channel_id: str
    channel_name: str = ""
    channel_type: ChannelType | None = None
    success: bool
    error: str | None = None
    delivered_at: datetime
    duration_ms: float = 0.0


# --- Escalation ---


class EscalationConditions(BaseModel):
    """When an alert qualifies for escalation."""

    severity: list[Severity] = Field(default_factory=list)
    duration_minutes: float = Field(..., gt=0)
    no_acknowledgment: bool = True


class EscalationActions(BaseModel):
    """What an escalation does."""

    channel_ids: list[str] = Field(default_factory=list)
    escalate_to: list[str] = Field(default_factory=list)
    auto_resolve: bool = False


class EscalationRule(BaseModel):
    """Secondary notification for alerts left unacknowledged too long."""

    id: str = Field(default_factory=lambda: _new_id("esc"))
    name: str
    conditions: EscalationConditions
    actions: EscalationActions = Field(default_factory=EscalationActions)
    enabled: bool = True


class EscalationEvent(BaseModel):
    """Record of one (alert, escalation rule) escalation."""

    alert_id: str
    rule_id: str
    rule_name: str
    escalated_at: datetime
    unacknowledged_minutes: float
    channel_ids: list[str] = Field(default_factory=list)
    escalate_to: list[str] = Field(default_factory=list)
    auto_resolved: bool = False
    deliveries: list[DeliveryResult] = Field(default_factory=list)


# --- Audit ---


class AuditEntry(BaseModel):
    """A single entry in the append-only audit log. Never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("aud"))
    timestamp: datetime
    action: AuditAction
    alert_id: str
    channel_id: str | None = None
    user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


# --- Health ---


class ServiceHealth(BaseModel):
    """Result of probing one dependent service."""

    service: str
    status: HealthStatus
    core: bool = False
    response_time_ms: float = 0.0
    last_check: datetime
    error_message: str | None = None
    details: dict[str, Any] | None = None


class SystemStatus(BaseModel):
    """Overall engine status combining service health and open alerts."""

    status: HealthStatus
    services: dict[str, ServiceHealth] = Field(default_factory=dict)
    active_alerts: int = 0
    active_by_severity: dict[str, int] = Field(default_factory=dict)
    last_snapshot: MetricSnapshot | None = None
    checked_at: datetime
