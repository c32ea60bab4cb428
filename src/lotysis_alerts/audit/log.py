"""Bounded append-only audit log.

Entries are frozen ``AuditEntry`` models kept newest-first in a ring buffer;
once the cap is reached the oldest entry is dropped. Entries are never
mutated after append.

Sinks receive every entry after it is recorded. Sinking is fire-and-forget:
failures are warned but never block recording.
"""

from __future__ import annotations

import json
import threading
import warnings
from collections import deque
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from lotysis_alerts.models import AuditAction, AuditEntry, DeliveryResult

DEFAULT_CAPACITY = 1000


class AuditSinkWarning(UserWarning):
    """Emitted when an audit sink fails (non-fatal)."""


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for audit entry sinks."""

    def ship(self, entry: AuditEntry) -> None:
        """Ship a single audit entry to an external backend."""
        ...


class JsonlAuditSink:
    """Append audit entries as JSON lines to a file.

    Useful for log rotation or offline inspection.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def ship(self, entry: AuditEntry) -> None:
        line = json.dumps(entry.model_dump(mode="json"), sort_keys=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


class AuditLog:
    """Append-only, bounded audit log.

    Thread-safe via a lock on all state access.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        sinks: list[AuditSink] | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("Audit log capacity must be at least 1")
        self._capacity = capacity
        self._entries: deque[AuditEntry] = deque(maxlen=capacity)
        self._sinks: list[AuditSink] = sinks or []
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry (newest first), dropping the oldest beyond the cap."""
        with self._lock:
            self._entries.appendleft(entry)
            # appendleft on a full deque discards from the right, which is
            # exactly the oldest entry.

        for sink in self._sinks:
            try:
                sink.ship(entry)
            except Exception as exc:
                warnings.warn(
                    f"Audit sink {type(sink).__name__} failed: {exc}",
                    AuditSinkWarning,
                    stacklevel=2,
                )

        return entry

    def log(
        self,
        action: AuditAction,
        alert_id: str,
        channel_id: str | None = None,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Create and record an entry stamped with the current time."""
        entry = AuditEntry(
            timestamp=self._clock(),
            action=action,
            alert_id=alert_id,
            channel_id=channel_id,
            user_id=user_id,
            details=details or {},
        )
        return self.record(entry)

    def record_deliveries(
        self, alert_id: str, results: Iterable[DeliveryResult],
    ) -> list[AuditEntry]:
        """Record one sent/failed entry per delivery result."""
        entries: list[AuditEntry] = []
        for result in results:
            details: dict[str, Any] = {
                "channel_name": result.channel_name,
                "duration_ms": round(result.duration_ms, 1),
            }
            if result.success:
                action = AuditAction.SENT
            else:
                action = AuditAction.FAILED
                details["error"] = result.error or "Unknown error"
            entries.append(
                self.log(action, alert_id, channel_id=result.channel_id, details=details)
            )
        return entries

    def query(
        self,
        limit: int = 100,
        alert_id: str | None = None,
        action: AuditAction | None = None,
    ) -> list[AuditEntry]:
        """Return up to *limit* entries, newest first."""
        with self._lock:
            entries = list(self._entries)
        if alert_id is not None:
            entries = [e for e in entries if e.alert_id == alert_id]
        if action is not None:
            entries = [e for e in entries if e.action == action]
        return entries[:limit]

    def load(self, entries: Iterable[AuditEntry | dict[str, Any]]) -> None:
        """Replace the log contents. *entries* are newest first."""
        parsed = [
            e if isinstance(e, AuditEntry) else AuditEntry(**e) for e in entries
        ]
        with self._lock:
            self._entries = deque(parsed[: self._capacity], maxlen=self._capacity)

    def export(self) -> list[dict[str, Any]]:
        """Serialise all entries, newest first."""
        with self._lock:
            return [e.model_dump(mode="json") for e in self._entries]
