"""SQLite log of fired alerts and diagnostic events."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import Alert

Connection = sqlite3.Connection
Row = sqlite3.Row


class Database:
    """Lightweight wrapper around SQLite operations."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    meeting_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    starts_at TEXT NOT NULL,
                    fired_at TEXT NOT NULL,
                    meeting_link TEXT,
                    UNIQUE(kind, entity_id, meeting_id, starts_at)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS diagnostics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    category TEXT NOT NULL,
                    record_kind TEXT,
                    entity_id TEXT,
                    record_id TEXT,
                    detail TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    # region Alerts
    def record_alert(self, alert: Alert) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO alerts (kind, entity_id, meeting_id, title, starts_at, fired_at, meeting_link)
                VALUES (:kind, :entity_id, :meeting_id, :title, :starts_at, :fired_at, :meeting_link)
                ON CONFLICT(kind, entity_id, meeting_id, starts_at) DO NOTHING
                """,
                {
                    "kind": alert.kind.value,
                    "entity_id": alert.entity_id,
                    "meeting_id": alert.record_id,
                    "title": alert.title,
                    "starts_at": alert.starts_at.isoformat(),
                    "fired_at": alert.fired_at.isoformat(),
                    "meeting_link": alert.meeting_link,
                },
            )
            conn.commit()

    def get_alerts(self, limit: int = 50) -> List[Row]:
        with self.connect() as conn:
            cursor = conn.execute("SELECT * FROM alerts ORDER BY id DESC LIMIT ?", (limit,))
            return cursor.fetchall()

    # endregion

    # region Diagnostics
    def record_diagnostic(
        self,
        category: str,
        detail: str,
        *,
        record_kind: Optional[str] = None,
        entity_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO diagnostics (category, record_kind, entity_id, record_id, detail, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (category, record_kind, entity_id, record_id, detail, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    def get_diagnostics(self, category: Optional[str] = None, limit: int = 50) -> List[Row]:
        with self.connect() as conn:
            if category:
                cursor = conn.execute(
                    "SELECT * FROM diagnostics WHERE category = ? ORDER BY id DESC LIMIT ?",
                    (category, limit),
                )
            else:
                cursor = conn.execute("SELECT * FROM diagnostics ORDER BY id DESC LIMIT ?", (limit,))
            return cursor.fetchall()

    def count_diagnostics(self) -> Dict[str, Any]:
        with self.connect() as conn:
            cursor = conn.execute("SELECT category, COUNT(*) AS total FROM diagnostics GROUP BY category")
            return {row["category"]: row["total"] for row in cursor.fetchall()}

    # endregion


__all__ = ["Database"]
