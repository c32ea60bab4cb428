"""Persistence backends for engine state."""

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
from lotysis_alerts.store.sqlite import SqliteStore

__all__ = [
    "ALERTS",
    "ALERT_RULES",
    "AUDIT_LOG",
    "CHANNELS",
    "COLLECTIONS",
    "ESCALATION_RULES",
    "METRICS",
    "MemoryStore",
    "PersistenceError",
    "SqliteStore",
    "Store",
    "TEMPLATES",
]
