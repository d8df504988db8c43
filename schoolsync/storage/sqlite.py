"""SQLite storage backend for schoolsync.

Local-first storage with:
- a key/value cache table with per-row expiry
- an append-only write-behind queue
- the local settings document, one row per top-level key
- scheduled notification rows

Every method is blocking. Async callers go through DurableStore, which runs
these calls off the event loop.
"""

import contextlib
import json
import logging
import sqlite3
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from schoolsync.types import (
    CacheEntry,
    NotificationKind,
    QueueItem,
    ScheduledNotification,
    StoreStatus,
    from_epoch,
    to_epoch,
    utc_now,
)

from .schema import init_db, validate_table_name

logger = logging.getLogger(__name__)


class SQLiteStore:
    """SQLite-based durable store.

    Connections are opened per operation; SQLite serializes writers, and
    primary-key/unique upserts give last-writer-wins per row.
    """

    BUSY_TIMEOUT_MS = 5000

    def __init__(
        self,
        db_path: Optional[Path] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.db_path = self._resolve_db_path(db_path)
        self._now_fn = now_fn

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            return Path(db_path).expanduser().resolve()

        from schoolsync.config import get_data_home

        default_path = get_data_home() / "default.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return default_path.resolve()
        except OSError as e:
            fallback_dir = Path(tempfile.gettempdir()) / ".schoolsync"
            logger.warning(
                f"Cannot write to {default_path.parent} ({e}), falling back to {fallback_dir}"
            )
            return (fallback_dir / "default.db").resolve()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={self.BUSY_TIMEOUT_MS}")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes the connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def close(self):
        """Connections are per-operation; kept for API symmetry."""
        pass

    def _now(self) -> float:
        return to_epoch(self._now_fn())

    @staticmethod
    def _epoch(now: Optional[datetime], fallback: float) -> float:
        return to_epoch(now) if now is not None else fallback

    # === Cache ===

    def cache_get_entry(self, key: str, now: Optional[datetime] = None) -> Optional[CacheEntry]:
        """Return the unexpired cache row for key, with its raw JSON value."""
        ts = self._epoch(now, self._now())
        with self._connect() as conn:
            row = conn.execute(
                """SELECT key, value, expires_at FROM cache
                   WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)""",
                (key, ts),
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(key=row["key"], value=row["value"], expires_at=from_epoch(row["expires_at"]))

    def cache_get(self, key: str, now: Optional[datetime] = None) -> Optional[str]:
        entry = self.cache_get_entry(key, now)
        return entry.value if entry else None

    def cache_set(
        self,
        key: str,
        value_json: str,
        ttl_minutes: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> None:
        ts = self._epoch(now, self._now())
        expires_at = ts + ttl_minutes * 60 if ttl_minutes is not None else None
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO cache (key, value, created_at, expires_at)
                   VALUES (?, ?, ?, ?)""",
                (key, value_json, ts, expires_at),
            )

    def cache_delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM cache WHERE key = ?", (key,))

    def cache_clear(self) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM cache").rowcount

    def cleanup_expired_cache(self, now: Optional[datetime] = None) -> int:
        ts = self._epoch(now, self._now())
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM cache WHERE expires_at IS NOT NULL AND expires_at <= ?", (ts,)
            )
            return cursor.rowcount

    # === Write-behind queue ===

    def queue_add(self, kind: str, payload_json: str, now: Optional[datetime] = None) -> int:
        ts = self._epoch(now, self._now())
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO sync_queue (kind, payload, created_at) VALUES (?, ?, ?)",
                (kind, payload_json, ts),
            )
            return cursor.lastrowid

    def queue_all(self, kind: Optional[str] = None) -> List[QueueItem]:
        """All queued items (optionally of one kind) in creation order."""
        with self._connect() as conn:
            if kind is None:
                rows = conn.execute(
                    "SELECT id, kind, payload, created_at FROM sync_queue ORDER BY id"
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT id, kind, payload, created_at FROM sync_queue
                       WHERE kind = ? ORDER BY id""",
                    (kind,),
                ).fetchall()
        return [
            QueueItem(
                id=row["id"],
                kind=row["kind"],
                payload=row["payload"],
                created_at=from_epoch(row["created_at"]),
            )
            for row in rows
        ]

    def queue_delete(self, item_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))

    def queue_clear(self, kind: Optional[str] = None) -> int:
        with self._connect() as conn:
            if kind is None:
                return conn.execute("DELETE FROM sync_queue").rowcount
            return conn.execute("DELETE FROM sync_queue WHERE kind = ?", (kind,)).rowcount

    def queue_counts(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT kind, COUNT(*) AS count FROM sync_queue GROUP BY kind"
            ).fetchall()
        return {row["kind"]: row["count"] for row in rows}

    # === Settings ===

    def get_settings_subset(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return stored settings for the given keys; missing keys are omitted."""
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ",".join("?" * len(keys))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT key, value FROM settings WHERE key IN ({placeholders})", keys
            ).fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    def get_all_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    def merge_settings(self, patch: Dict[str, Any]) -> None:
        """Shallow-merge top-level keys of patch into the settings document.

        Runs in one transaction: either the whole patch lands or none of it.
        """
        if not patch:
            return
        ts = self._now()
        encoded = [(key, json.dumps(value), ts) for key, value in patch.items()]
        with self._connect() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
                encoded,
            )

    # === Notifications ===

    def _row_to_notification(self, row: sqlite3.Row) -> ScheduledNotification:
        return ScheduledNotification(
            id=row["id"],
            subject_entity_id=row["subject_entity_id"],
            kind=NotificationKind(row["kind"]),
            fires_at=from_epoch(row["fires_at"]),
            sent_at=from_epoch(row["sent_at"]),
            created_at=from_epoch(row["created_at"]),
        )

    def schedule_notification(
        self,
        subject_entity_id: int,
        kind: NotificationKind,
        fires_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """Insert or reschedule the (subject, kind) row.

        A row that has already been sent is left untouched, so re-running the
        scheduler never resurrects a delivered reminder.

        Returns:
            True if a row was inserted or rescheduled.
        """
        ts = self._epoch(now, self._now())
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO notifications
                   (subject_entity_id, kind, fires_at, sent_at, created_at)
                   VALUES (?, ?, ?, NULL, ?)
                   ON CONFLICT(subject_entity_id, kind) DO UPDATE SET
                       fires_at = excluded.fires_at
                   WHERE notifications.sent_at IS NULL""",
                (subject_entity_id, NotificationKind(kind).value, to_epoch(fires_at), ts),
            )
            return cursor.rowcount > 0

    def get_due_notifications(self, now: datetime) -> List[ScheduledNotification]:
        """Unsent rows whose fire time has passed, in insertion order."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM notifications
                   WHERE fires_at <= ? AND sent_at IS NULL
                   ORDER BY id""",
                (to_epoch(now),),
            ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def mark_notification_sent(self, notification_id: int, now: Optional[datetime] = None) -> bool:
        """Set sent_at once. Returns False if the row was already sent or is gone."""
        ts = self._epoch(now, self._now())
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET sent_at = ? WHERE id = ? AND sent_at IS NULL",
                (ts, notification_id),
            )
            return cursor.rowcount == 1

    def get_notifications_for(self, subject_entity_id: int) -> List[ScheduledNotification]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM notifications WHERE subject_entity_id = ?
                   ORDER BY fires_at""",
                (subject_entity_id,),
            ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def list_notifications(self, include_sent: bool = True) -> List[ScheduledNotification]:
        query = "SELECT * FROM notifications"
        if not include_sent:
            query += " WHERE sent_at IS NULL"
        query += " ORDER BY fires_at, id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def cleanup_sent_notifications(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM notifications WHERE sent_at IS NOT NULL AND sent_at < ?",
                (to_epoch(cutoff),),
            )
            return cursor.rowcount

    def delete_notifications_for(self, subject_entity_id: int) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM notifications WHERE subject_entity_id = ?", (subject_entity_id,)
            )
            return cursor.rowcount

    # === Metadata ===

    def get_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, self._now()),
            )

    # === Status ===

    def count_rows(self, table: str) -> int:
        validate_table_name(table)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def get_status(self) -> StoreStatus:
        with self._connect() as conn:
            pending = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE sent_at IS NULL"
            ).fetchone()[0]
            sent = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE sent_at IS NOT NULL"
            ).fetchone()[0]
        return StoreStatus(
            cache_entries=self.count_rows("cache"),
            queued_items=self.count_rows("sync_queue"),
            settings_keys=self.count_rows("settings"),
            notifications_pending=pending,
            notifications_sent=sent,
            extra={"db_path": str(self.db_path)},
        )
