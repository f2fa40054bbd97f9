from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from feedsync.models import (
    DEFAULT_FEED_COLOR,
    EventSource,
    Feed,
    LocalEvent,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)
from feedsync.reconciler import ReconcilePlan


logger = logging.getLogger(__name__)

FEED_COLUMNS = (
    "id, user_id, name, url, credential, external_id, enabled, direction, color, last_synchronized, sync_method"
)
EVENT_COLUMNS = (
    "id, user_id, title, description, start_time, end_time, color, all_day, source_json, csv_protected, "
    "created_at, updated_at"
)
UPDATABLE_FEED_FIELDS = {
    "name",
    "url",
    "credential",
    "external_id",
    "enabled",
    "direction",
    "color",
    "last_synchronized",
    "sync_method",
}
UPDATABLE_EVENT_FIELDS = {
    "title",
    "description",
    "start_time",
    "end_time",
    "color",
    "all_day",
    "source",
    "csv_protected",
}

EXACT_DUPLICATES_SQL = """
    SELECT id, csv_protected,
           ROW_NUMBER() OVER (
               PARTITION BY title, start_time, IFNULL(end_time, ''), user_id
               ORDER BY id DESC
           ) AS rn
    FROM events
    WHERE source_type = 'ical'
"""


def _utc_now() -> str:
    return serialize_datetime(utc_now()) or ""


def _row_to_feed(row: sqlite3.Row) -> Feed:
    return Feed(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        name=str(row["name"]),
        url=str(row["url"]),
        credential=str(row["credential"] or ""),
        external_id=str(row["external_id"] or ""),
        enabled=bool(row["enabled"]),
        direction=str(row["direction"]),
        color=str(row["color"] or DEFAULT_FEED_COLOR),
        last_synchronized=parse_iso_datetime(row["last_synchronized"]),
        sync_method=str(row["sync_method"] or "ical"),
    )


def _row_to_event(row: sqlite3.Row) -> LocalEvent:
    source_payload = json.loads(row["source_json"]) if row["source_json"] else None
    return LocalEvent(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        title=str(row["title"]),
        description=str(row["description"] or ""),
        start_time=parse_iso_datetime(row["start_time"]),
        end_time=parse_iso_datetime(row["end_time"]),
        color=str(row["color"] or ""),
        all_day=bool(row["all_day"]),
        source=EventSource.from_dict(source_payload),
        csv_protected=bool(row["csv_protected"]),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _source_columns(source: EventSource | None) -> tuple[Any, Any, Any, Any]:
    if source is None:
        return None, None, None, None
    return (
        source.type,
        source.feed_id,
        source.external_id or None,
        json.dumps(source.to_dict(), ensure_ascii=False),
    )


class EventStore:
    """SQLite-backed feed registry, event store and sync audit trail."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS feeds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            credential TEXT,
            external_id TEXT,
            enabled INTEGER NOT NULL DEFAULT 1,
            direction TEXT NOT NULL DEFAULT 'import',
            color TEXT,
            last_synchronized TEXT,
            sync_method TEXT NOT NULL DEFAULT 'ical'
        );

        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT,
            color TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            source_type TEXT,
            source_feed_id INTEGER,
            source_external_id TEXT,
            source_json TEXT,
            csv_protected INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_feed ON events(user_id, source_feed_id);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            feed_id INTEGER,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created INTEGER NOT NULL DEFAULT 0,
            updated INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0,
            protected INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            feed_id INTEGER,
            uid TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._session() as conn:
            conn.executescript(schema_sql)

    # Feed registry

    def create_feed(
        self,
        *,
        user_id: int,
        name: str,
        url: str,
        credential: str = "",
        external_id: str = "",
        enabled: bool = True,
        direction: str = "import",
        color: str = DEFAULT_FEED_COLOR,
        sync_method: str = "ical",
    ) -> Feed:
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO feeds(user_id, name, url, credential, external_id, enabled, direction, color, sync_method)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(user_id),
                    name,
                    url,
                    credential or None,
                    external_id or None,
                    int(bool(enabled)),
                    direction,
                    color or DEFAULT_FEED_COLOR,
                    sync_method,
                ),
            )
            feed_id = int(cursor.lastrowid)
        feed = self.get_feed(feed_id)
        assert feed is not None
        return feed

    def get_feed(self, feed_id: int) -> Feed | None:
        with self._session() as conn:
            row = conn.execute(f"SELECT {FEED_COLUMNS} FROM feeds WHERE id = ?", (int(feed_id),)).fetchone()
        return _row_to_feed(row) if row else None

    def list_feeds(self) -> list[Feed]:
        with self._session() as conn:
            rows = conn.execute(f"SELECT {FEED_COLUMNS} FROM feeds ORDER BY id").fetchall()
        return [_row_to_feed(row) for row in rows]

    def get_feeds_for_user(self, user_id: int) -> list[Feed]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {FEED_COLUMNS} FROM feeds WHERE user_id = ? ORDER BY id",
                (int(user_id),),
            ).fetchall()
        return [_row_to_feed(row) for row in rows]

    def get_enabled_import_feeds(self) -> list[Feed]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {FEED_COLUMNS} FROM feeds WHERE enabled = 1 AND direction = 'import' ORDER BY id"
            ).fetchall()
        return [_row_to_feed(row) for row in rows]

    def update_feed(self, feed_id: int, **fields: Any) -> Feed | None:
        unknown = set(fields) - UPDATABLE_FEED_FIELDS
        if unknown:
            raise ValueError(f"Unknown feed fields: {', '.join(sorted(unknown))}")
        if fields:
            with self._session() as conn:
                self._update_feed_row(conn, feed_id, fields)
        return self.get_feed(feed_id)

    def _update_feed_row(self, conn: sqlite3.Connection, feed_id: int, fields: dict[str, Any]) -> None:
        assignments: list[str] = []
        values: list[Any] = []
        for key, value in fields.items():
            if key == "last_synchronized":
                value = serialize_datetime(value)
            elif key == "enabled":
                value = int(bool(value))
            assignments.append(f"{key} = ?")
            values.append(value)
        values.append(int(feed_id))
        conn.execute(f"UPDATE feeds SET {', '.join(assignments)} WHERE id = ?", values)

    def delete_feed(self, feed_id: int) -> bool:
        with self._session() as conn:
            conn.execute(
                """
                UPDATE events
                SET source_feed_id = NULL,
                    source_json = json_set(source_json, '$.feed_id', NULL)
                WHERE source_feed_id = ?
                """,
                (int(feed_id),),
            )
            cursor = conn.execute("DELETE FROM feeds WHERE id = ?", (int(feed_id),))
            return cursor.rowcount > 0

    # Local events

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: int,
        title: str,
        start_time: datetime,
        end_time: datetime | None,
        description: str,
        color: str,
        all_day: bool,
        source: EventSource | None,
        csv_protected: bool,
    ) -> int:
        now_text = _utc_now()
        source_type, source_feed_id, source_external_id, source_json = _source_columns(source)
        cursor = conn.execute(
            """
            INSERT INTO events(
                user_id, title, description, start_time, end_time, color, all_day,
                source_type, source_feed_id, source_external_id, source_json, csv_protected,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(user_id),
                title,
                description,
                serialize_datetime(start_time),
                serialize_datetime(end_time),
                color,
                int(bool(all_day)),
                source_type,
                source_feed_id,
                source_external_id,
                source_json,
                int(bool(csv_protected)),
                now_text,
                now_text,
            ),
        )
        return int(cursor.lastrowid)

    def _update_event_row(self, conn: sqlite3.Connection, event_id: int, changes: dict[str, Any]) -> int:
        unknown = set(changes) - UPDATABLE_EVENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown event fields: {', '.join(sorted(unknown))}")
        assignments: list[str] = []
        values: list[Any] = []
        for key, value in changes.items():
            if key == "source":
                source_type, source_feed_id, source_external_id, source_json = _source_columns(value)
                assignments.extend(
                    ["source_type = ?", "source_feed_id = ?", "source_external_id = ?", "source_json = ?"]
                )
                values.extend([source_type, source_feed_id, source_external_id, source_json])
                continue
            if key in {"start_time", "end_time"}:
                value = serialize_datetime(value)
            elif key in {"all_day", "csv_protected"}:
                value = int(bool(value))
            assignments.append(f"{key} = ?")
            values.append(value)
        assignments.append("updated_at = ?")
        values.append(_utc_now())
        values.append(int(event_id))
        cursor = conn.execute(f"UPDATE events SET {', '.join(assignments)} WHERE id = ?", values)
        return cursor.rowcount

    def create_event(
        self,
        user_id: int,
        *,
        title: str,
        start_time: datetime,
        end_time: datetime | None = None,
        description: str = "",
        color: str = "",
        all_day: bool = False,
        source: EventSource | None = None,
        csv_protected: bool = False,
    ) -> LocalEvent:
        with self._session() as conn:
            event_id = self._insert_event(
                conn,
                user_id=user_id,
                title=title,
                start_time=start_time,
                end_time=end_time,
                description=description,
                color=color,
                all_day=all_day,
                source=source,
                csv_protected=csv_protected,
            )
        event = self.get_event(event_id)
        assert event is not None
        return event

    def update_event(self, event_id: int, **changes: Any) -> LocalEvent | None:
        if changes:
            with self._session() as conn:
                self._update_event_row(conn, event_id, changes)
        return self.get_event(event_id)

    def delete_event(self, event_id: int) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM events WHERE id = ?", (int(event_id),))
            return cursor.rowcount > 0

    def get_event(self, event_id: int) -> LocalEvent | None:
        with self._session() as conn:
            row = conn.execute(f"SELECT {EVENT_COLUMNS} FROM events WHERE id = ?", (int(event_id),)).fetchone()
        return _row_to_event(row) if row else None

    def list_events(self, user_id: int | None = None) -> list[LocalEvent]:
        with self._session() as conn:
            if user_id is None:
                rows = conn.execute(f"SELECT {EVENT_COLUMNS} FROM events ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {EVENT_COLUMNS} FROM events WHERE user_id = ? ORDER BY id",
                    (int(user_id),),
                ).fetchall()
        return [_row_to_event(row) for row in rows]

    def get_events_for_feed(self, user_id: int, feed_id: int) -> list[LocalEvent]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {EVENT_COLUMNS} FROM events WHERE user_id = ? AND source_feed_id = ? ORDER BY id",
                (int(user_id), int(feed_id)),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def list_feed_synced_events(self) -> list[LocalEvent]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {EVENT_COLUMNS} FROM events WHERE source_feed_id IS NOT NULL ORDER BY user_id, start_time, id"
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def apply_plan(self, plan: ReconcilePlan, *, synced_at: datetime) -> None:
        """Apply a reconciliation plan and advance the feed timestamp atomically.

        Any failure rolls back every write of the plan; the feed keeps its
        previous ``last_synchronized`` value.
        """
        with self._session() as conn:
            operation = "create"
            uid = ""
            try:
                for draft in plan.creates:
                    uid = draft.source.external_id
                    self._insert_event(
                        conn,
                        user_id=draft.user_id,
                        title=draft.title,
                        start_time=draft.start_time,
                        end_time=draft.end_time,
                        description=draft.description,
                        color=draft.color,
                        all_day=draft.all_day,
                        source=draft.source,
                        csv_protected=False,
                    )
                operation = "update"
                for update in plan.updates:
                    uid = update.external_id
                    self._update_event_row(conn, update.event_id, update.changes)
                operation = "delete"
                for deletion in plan.deletes:
                    uid = deletion.external_id
                    conn.execute(
                        "DELETE FROM events WHERE id = ? AND csv_protected = 0",
                        (int(deletion.event_id),),
                    )
                operation = "mark_synchronized"
                uid = ""
                self._update_feed_row(conn, plan.feed_id, {"last_synchronized": synced_at})
            except Exception:
                logger.error(
                    "Feed %s: %s failed for UID %r, rolling back %d creates, %d updates, %d deletes",
                    plan.feed_id,
                    operation,
                    uid,
                    len(plan.creates),
                    len(plan.updates),
                    len(plan.deletes),
                )
                raise

    # Maintenance

    def count_exact_duplicates(self) -> int:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM ({EXACT_DUPLICATES_SQL}) WHERE rn > 1 AND csv_protected = 0"
            ).fetchone()
        return int(row["total"] or 0)

    def delete_exact_duplicates(self) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM events
                WHERE id IN (
                    SELECT id FROM ({EXACT_DUPLICATES_SQL}) WHERE rn > 1 AND csv_protected = 0
                )
                """
            )
            return int(cursor.rowcount)

    # Sync runs and audit trail

    def record_sync_run(
        self,
        *,
        feed_id: int | None,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
        protected: int = 0,
    ) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(run_at, feed_id, trigger, status, message, duration_ms,
                                      created, updated, deleted, protected)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _utc_now(),
                    feed_id,
                    trigger,
                    status,
                    message,
                    int(duration_ms),
                    int(created),
                    int(updated),
                    int(deleted),
                    int(protected),
                ),
            )
            return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, feed_id: int | None = None) -> list[dict[str, Any]]:
        with self._session() as conn:
            if feed_id is None:
                rows = conn.execute(
                    """
                    SELECT id, run_at, feed_id, trigger, status, message, duration_ms,
                           created, updated, deleted, protected
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT id, run_at, feed_id, trigger, status, message, duration_ms,
                           created, updated, deleted, protected
                    FROM sync_runs
                    WHERE feed_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (int(feed_id), max(1, limit)),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        feed_id: int | None,
        uid: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO audit_events(run_id, created_at, feed_id, uid, action, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, _utc_now(), feed_id, uid, action, json.dumps(details, ensure_ascii=False, default=str)),
            )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._session() as conn:
            if run_id is None:
                rows = conn.execute(
                    """
                    SELECT id, run_id, created_at, feed_id, uid, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT id, run_id, created_at, feed_id, uid, action, details_json
                    FROM audit_events
                    WHERE run_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (int(run_id), max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
