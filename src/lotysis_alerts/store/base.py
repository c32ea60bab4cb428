"""Store capability the engine persists its state through.

The engine only ever talks to the ``Store`` protocol: named collections of
JSON-serialisable dicts, each saved and loaded as a whole. Any durable
key-value or relational engine can sit behind it.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Protocol, runtime_checkable

CHANNELS = "channels"
TEMPLATES = "templates"
ESCALATION_RULES = "escalationRules"
AUDIT_LOG = "auditLog"
METRICS = "metrics"
ALERTS = "alerts"
ALERT_RULES = "alertRules"

COLLECTIONS: tuple[str, ...] = (
    CHANNELS,
    TEMPLATES,
    ESCALATION_RULES,
    AUDIT_LOG,
    METRICS,
    ALERTS,
    ALERT_RULES,
)


class PersistenceError(Exception):
    """Raised when a store read or write fails. Callers may retry."""


@runtime_checkable
class Store(Protocol):
    """Protocol for state storage backends."""

    def load(self, key: str) -> list[dict[str, Any]]:
        """Return the saved collection, or an empty list if never saved."""
        ...

    def save(self, key: str, items: list[dict[str, Any]]) -> None:
        """Replace the collection with *items*."""
        ...

    def ping(self) -> None:
        """Raise PersistenceError if the backend is unreachable."""
        ...


class MemoryStore:
    """In-process store. State is lost when the process exits."""

    def __init__(self) -> None:
        self._data: dict[str, list[dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._data.get(key, []))

    def save(self, key: str, items: list[dict[str, Any]]) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(items)

    def ping(self) -> None:
        return None
