from __future__ import annotations

import functools
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from unical.errors import StoreError
from unical.models import ORIGIN_IMPORTED, ORIGIN_MANUAL, EventRecord, serialize_datetime

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventStore(ABC):
    """Durable record set, scoped per user.

    Every method is a single select/insert/update/delete with equality and
    null filters. Tombstone-changing calls only touch rows already in the
    expected source state and return how many rows changed.
    """

    @abstractmethod
    def list_events(
        self,
        user_id: str,
        *,
        origin: str | None = None,
        active: bool | None = None,
    ) -> list[EventRecord]:
        """Return the user's records filtered by origin and tombstone state."""

    @abstractmethod
    def insert_events(self, user_id: str, records: Iterable[EventRecord]) -> int:
        """Insert all records in one batch."""

    @abstractmethod
    def update_event(self, user_id: str, record: EventRecord) -> bool:
        """Replace the editable columns of one record."""

    @abstractmethod
    def tombstone_event(self, user_id: str, event_id: str, when: datetime) -> int:
        """Tombstone one active record; tombstoned rows are left untouched."""

    @abstractmethod
    def tombstone_all(self, user_id: str, when: datetime) -> int:
        """Set the tombstone on every active record of the user."""

    @abstractmethod
    def restore_event(self, user_id: str, event_id: str) -> int:
        """Clear the tombstone of one tombstoned record."""

    @abstractmethod
    def purge_event(self, user_id: str, event_id: str) -> int:
        """Remove one tombstoned record for good. Active rows are refused."""

    @abstractmethod
    def delete_events(self, user_id: str, ids: Iterable[str]) -> int:
        """Remove records by id regardless of tombstone state."""

    @abstractmethod
    def search_active(self, user_id: str, query: str = "", limit: int = 50) -> list[EventRecord]:
        """Active records whose summary contains ``query`` (case-insensitive)."""

    @abstractmethod
    def active_summaries(self, user_id: str) -> list[str]:
        """Sorted distinct non-empty summaries of active records."""

    @abstractmethod
    def get_publish_key(self, user_id: str) -> str | None:
        """Published feed key of the user, if any."""

    @abstractmethod
    def set_publish_key(self, user_id: str, key: str) -> None:
        """Insert or replace the published feed key of the user."""


def _wrap_sqlite(func: Callable[..., T]) -> Callable[..., T]:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as exc:
            logger.error("Event store call %s failed: %s", func.__name__, exc)
            raise StoreError(f"{func.__name__} failed: {exc}") from exc

    return wrapper


def _row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord.from_dict(
        {
            "id": row["id"],
            "uid": row["uid"],
            "summary": row["summary"],
            "location": row["location"],
            "description": row["description"],
            "start": row["start_time"],
            "end": row["end_time"],
            "origin": ORIGIN_MANUAL if row["is_manual"] else ORIGIN_IMPORTED,
            "color_key": row["color"],
            "tombstone": row["deleted_at"],
        }
    )


class SqliteEventStore(EventStore):
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @_wrap_sqlite
    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            uid TEXT NOT NULL,
            summary TEXT NOT NULL,
            location TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL DEFAULT '',
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            is_manual INTEGER NOT NULL,
            color TEXT NOT NULL DEFAULT '',
            deleted_at TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_user_uid ON events(user_id, uid);
        CREATE INDEX IF NOT EXISTS idx_events_user_summary ON events(user_id, summary);

        CREATE TABLE IF NOT EXISTS user_calendars (
            user_id TEXT PRIMARY KEY,
            filename TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    @_wrap_sqlite
    def list_events(
        self,
        user_id: str,
        *,
        origin: str | None = None,
        active: bool | None = None,
    ) -> list[EventRecord]:
        sql = "SELECT * FROM events WHERE user_id = ?"
        params: list[Any] = [user_id]
        if origin is not None:
            sql += " AND is_manual = ?"
            params.append(1 if origin == ORIGIN_MANUAL else 0)
        if active is True:
            sql += " AND deleted_at IS NULL"
        elif active is False:
            sql += " AND deleted_at IS NOT NULL"
        sql += " ORDER BY start_time, summary, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [_row_to_event(row) for row in rows]

    @_wrap_sqlite
    def insert_events(self, user_id: str, records: Iterable[EventRecord]) -> int:
        now = _utc_now()
        rows = [
            (
                record.id,
                user_id,
                record.uid,
                record.summary,
                record.location or "",
                record.description or "",
                serialize_datetime(record.start),
                serialize_datetime(record.end),
                1 if record.is_manual else 0,
                record.color_key or "",
                serialize_datetime(record.tombstone),
                now,
            )
            for record in records
        ]
        if not rows:
            return 0
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO events(
                        id, user_id, uid, summary, location, description,
                        start_time, end_time, is_manual, color, deleted_at, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                conn.commit()
        return len(rows)

    @_wrap_sqlite
    def update_event(self, user_id: str, record: EventRecord) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE events
                    SET summary = ?, location = ?, description = ?, start_time = ?, end_time = ?, color = ?
                    WHERE user_id = ? AND id = ?
                    """,
                    (
                        record.summary,
                        record.location or "",
                        record.description or "",
                        serialize_datetime(record.start),
                        serialize_datetime(record.end),
                        record.color_key or "",
                        user_id,
                        record.id,
                    ),
                )
                conn.commit()
                return cursor.rowcount > 0

    @_wrap_sqlite
    def tombstone_event(self, user_id: str, event_id: str, when: datetime) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE events SET deleted_at = ? WHERE user_id = ? AND id = ? AND deleted_at IS NULL",
                    (serialize_datetime(when), user_id, event_id),
                )
                conn.commit()
                return cursor.rowcount

    @_wrap_sqlite
    def tombstone_all(self, user_id: str, when: datetime) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE events SET deleted_at = ? WHERE user_id = ? AND deleted_at IS NULL",
                    (serialize_datetime(when), user_id),
                )
                conn.commit()
                return cursor.rowcount

    @_wrap_sqlite
    def restore_event(self, user_id: str, event_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE events SET deleted_at = NULL WHERE user_id = ? AND id = ? AND deleted_at IS NOT NULL",
                    (user_id, event_id),
                )
                conn.commit()
                return cursor.rowcount

    @_wrap_sqlite
    def purge_event(self, user_id: str, event_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM events WHERE user_id = ? AND id = ? AND deleted_at IS NOT NULL",
                    (user_id, event_id),
                )
                conn.commit()
                return cursor.rowcount

    @_wrap_sqlite
    def delete_events(self, user_id: str, ids: Iterable[str]) -> int:
        id_list = [str(item) for item in ids]
        if not id_list:
            return 0
        with self._lock:
            with self._connect() as conn:
                cursor = conn.executemany(
                    "DELETE FROM events WHERE user_id = ? AND id = ?",
                    [(user_id, item) for item in id_list],
                )
                conn.commit()
                return cursor.rowcount

    @_wrap_sqlite
    def search_active(self, user_id: str, query: str = "", limit: int = 50) -> list[EventRecord]:
        sql = "SELECT * FROM events WHERE user_id = ? AND deleted_at IS NULL"
        params: list[Any] = [user_id]
        if query:
            sql += " AND instr(lower(summary), lower(?)) > 0"
            params.append(query)
        sql += " ORDER BY start_time LIMIT ?"
        params.append(max(1, int(limit)))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [_row_to_event(row) for row in rows]

    @_wrap_sqlite
    def active_summaries(self, user_id: str) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT DISTINCT summary
                    FROM events
                    WHERE user_id = ? AND deleted_at IS NULL AND summary != ''
                    ORDER BY summary
                    """,
                    (user_id,),
                ).fetchall()
        return [str(row["summary"]) for row in rows]

    @_wrap_sqlite
    def get_publish_key(self, user_id: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT filename FROM user_calendars WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        if row is None:
            return None
        return str(row["filename"])

    @_wrap_sqlite
    def set_publish_key(self, user_id: str, key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_calendars(user_id, filename, created_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        filename = excluded.filename,
                        created_at = excluded.created_at
                    """,
                    (user_id, key, _utc_now()),
                )
                conn.commit()

