"""Lotysis alerts: a metrics-driven alerting engine."""

__version__ = "0.1.0"

from lotysis_alerts.alerts.store import AlertNotFoundError, AlertStore
from lotysis_alerts.audit.log import AuditLog, JsonlAuditSink
from lotysis_alerts.config import EngineConfig, find_config, load_config
from lotysis_alerts.engine import AlertingEngine, EngineError
from lotysis_alerts.escalation.manager import EscalationManager
from lotysis_alerts.health.checker import HealthChecker, ProbeError
from lotysis_alerts.metrics.collector import CollectionError, MetricsCollector
from lotysis_alerts.models import (
    Alert,
    AlertRule,
    AlertStatus,
    AuditAction,
    AuditEntry,
    Channel,
    ChannelType,
    DeliveryResult,
    EscalationRule,
    HealthStatus,
    MetricSnapshot,
    Operator,
    ServiceHealth,
    Severity,
    SystemStatus,
    Template,
)
from lotysis_alerts.notify.channels import ChannelDeliveryError
from lotysis_alerts.notify.dispatcher import NotificationDispatcher
from lotysis_alerts.notify.templates import RenderError
from lotysis_alerts.rules.engine import AlertRuleEngine, RuleEvaluationError
from lotysis_alerts.store import MemoryStore, PersistenceError, SqliteStore

__all__ = [
    "Alert",
    "AlertingEngine",
    "AlertNotFoundError",
    "AlertRule",
    "AlertRuleEngine",
    "AlertStatus",
    "AlertStore",
    "AuditAction",
    "AuditEntry",
    "AuditLog",
    "Channel",
    "ChannelDeliveryError",
    "ChannelType",
    "CollectionError",
    "DeliveryResult",
    "EngineConfig",
    "EngineError",
    "EscalationManager",
    "EscalationRule",
    "find_config",
    "HealthChecker",
    "HealthStatus",
    "JsonlAuditSink",
    "load_config",
    "MemoryStore",
    "MetricSnapshot",
    "MetricsCollector",
    "NotificationDispatcher",
    "Operator",
    "PersistenceError",
    "ProbeError",
    "RenderError",
    "RuleEvaluationError",
    "ServiceHealth",
    "Severity",
    "SqliteStore",
    "SystemStatus",
    "Template",
    "__version__",
]
