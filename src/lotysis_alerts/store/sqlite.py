"""SQLite-backed store with WAL mode.

Each collection is one row in the ``collections`` table holding the JSON
array of its items.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from lotysis_alerts.store.base import PersistenceError

_SCHEMA = """
CREATE TABLE IF NOT EXISTS collections (
    name        TEXT PRIMARY KEY,
    payload     TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""


class SqliteStore:
    """Thread-safe SQLite store.

    Uses WAL mode for concurrent readers and a threading lock for writes.
    Each thread gets its own connection via thread-local storage.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        try:
            with self._write_lock:
                self._get_conn().executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Cannot open store at {self._db_path}: {exc}"
            ) from exc

    @property
    def path(self) -> str:
        return self._db_path

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    def load(self, key: str) -> list[dict[str, Any]]:
        try:
            row = self._get_conn().execute(
                "SELECT payload FROM collections WHERE name = ?", (key,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to load '{key}': {exc}") from exc
        if row is None:
            return []
        try:
            items = json.loads(row["payload"])
        except json.JSONDecodeError as exc:
            raise PersistenceError(
                f"Corrupt payload for '{key}' in {self._db_path}"
            ) from exc
        if not isinstance(items, list):
            raise PersistenceError(
                f"Expected a JSON array for '{key}', got {type(items).__name__}"
            )
        return items

    def save(self, key: str, items: list[dict[str, Any]]) -> None:
        payload = json.dumps(items, sort_keys=True)
        now = datetime.now(tz=UTC).isoformat()
        try:
            with self._write_lock:
                conn = self._get_conn()
                conn.execute(
                    """INSERT INTO collections (name, payload, updated_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(name) DO UPDATE SET
                           payload = excluded.payload,
                           updated_at = excluded.updated_at""",
                    (key, payload, now),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to save '{key}': {exc}") from exc

    def ping(self) -> None:
        try:
            self._get_conn().execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Store unreachable: {exc}") from exc

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
