from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from shiftsync.errors import PersistenceError
from shiftsync.models import (
    DiffSummary,
    ExternalSync,
    Shift,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)
from shiftsync.reconciler import ShiftDiff

logger = logging.getLogger(__name__)

SYNC_UPDATABLE_COLUMNS = {
    "name",
    "calendar_url",
    "color",
    "display_mode",
    "auto_sync_interval",
    "is_hidden",
    "hide_from_stats",
}

SHIFT_COLUMNS = (
    "id",
    "calendar_id",
    "date",
    "start_time",
    "end_time",
    "title",
    "color",
    "notes",
    "is_all_day",
    "external_sync_id",
    "external_event_id",
    "created_at",
    "updated_at",
)


def _utc_now() -> str:
    return utc_now().isoformat()


def _sync_from_row(row: sqlite3.Row) -> ExternalSync:
    return ExternalSync(
        id=row["id"],
        calendar_id=row["calendar_id"],
        name=row["name"],
        sync_type=row["sync_type"],
        calendar_url=row["calendar_url"],
        color=row["color"],
        display_mode=row["display_mode"],
        auto_sync_interval=int(row["auto_sync_interval"]),
        is_one_time_import=bool(row["is_one_time_import"]),
        is_hidden=bool(row["is_hidden"]),
        hide_from_stats=bool(row["hide_from_stats"]),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        last_sync_status=row["last_sync_status"],
        last_sync_error=row["last_sync_error"],
    )


def _shift_from_row(row: sqlite3.Row) -> Shift:
    return Shift(
        id=row["id"],
        calendar_id=row["calendar_id"],
        date=row["date"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        title=row["title"],
        color=row["color"],
        notes=row["notes"],
        is_all_day=bool(row["is_all_day"]),
        external_sync_id=row["external_sync_id"],
        external_event_id=row["external_event_id"],
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _shift_values(shift: Shift) -> tuple[Any, ...]:
    return (
        shift.id,
        shift.calendar_id,
        shift.date,
        shift.start_time,
        shift.end_time,
        shift.title,
        shift.color,
        shift.notes,
        int(shift.is_all_day),
        shift.external_sync_id,
        shift.external_event_id,
        serialize_datetime(shift.created_at) or _utc_now(),
        serialize_datetime(shift.updated_at) or _utc_now(),
    )


def _insert_shifts(conn: sqlite3.Connection, shifts: list[Shift]) -> None:
    if not shifts:
        return
    placeholders = ", ".join("?" for _ in SHIFT_COLUMNS)
    conn.executemany(
        f"INSERT INTO shifts({', '.join(SHIFT_COLUMNS)}) VALUES ({placeholders})",
        [_shift_values(shift) for shift in shifts],
    )


def _update_shifts(conn: sqlite3.Connection, shifts: list[Shift]) -> None:
    for shift in shifts:
        conn.execute(
            """
            UPDATE shifts
            SET date = ?, start_time = ?, end_time = ?, title = ?, color = ?, notes = ?,
                is_all_day = ?, external_event_id = ?, updated_at = ?
            WHERE id = ? AND external_sync_id = ?
            """,
            (
                shift.date,
                shift.start_time,
                shift.end_time,
                shift.title,
                shift.color,
                shift.notes,
                int(shift.is_all_day),
                shift.external_event_id,
                serialize_datetime(shift.updated_at) or _utc_now(),
                shift.id,
                shift.external_sync_id,
            ),
        )


def _delete_shifts(conn: sqlite3.Connection, sync_id: str, shift_ids: list[str]) -> None:
    if not shift_ids:
        return
    conn.executemany(
        "DELETE FROM shifts WHERE id = ? AND external_sync_id = ?",
        [(shift_id, sync_id) for shift_id in shift_ids],
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS external_syncs (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            name TEXT NOT NULL,
            sync_type TEXT NOT NULL,
            calendar_url TEXT NOT NULL,
            color TEXT NOT NULL,
            display_mode TEXT NOT NULL,
            auto_sync_interval INTEGER NOT NULL DEFAULT 0,
            is_one_time_import INTEGER NOT NULL DEFAULT 0,
            is_hidden INTEGER NOT NULL DEFAULT 0,
            hide_from_stats INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            last_synced_at TEXT,
            last_sync_status TEXT,
            last_sync_error TEXT,
            CHECK (is_one_time_import = 0 OR auto_sync_interval = 0)
        );

        CREATE INDEX IF NOT EXISTS idx_external_syncs_calendar
            ON external_syncs(calendar_id, created_at);

        CREATE TABLE IF NOT EXISTS shifts (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            title TEXT NOT NULL,
            color TEXT NOT NULL,
            notes TEXT,
            is_all_day INTEGER NOT NULL DEFAULT 0,
            external_sync_id TEXT REFERENCES external_syncs(id) ON DELETE CASCADE,
            external_event_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_shifts_calendar ON shifts(calendar_id, date);

        CREATE UNIQUE INDEX IF NOT EXISTS idx_shifts_sync_event
            ON shifts(external_sync_id, external_event_id)
            WHERE external_sync_id IS NOT NULL;

        CREATE TABLE IF NOT EXISTS sync_logs (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            external_sync_id TEXT NOT NULL REFERENCES external_syncs(id) ON DELETE CASCADE,
            external_sync_name TEXT NOT NULL,
            status TEXT NOT NULL,
            error_message TEXT,
            shifts_created INTEGER NOT NULL DEFAULT 0,
            shifts_updated INTEGER NOT NULL DEFAULT 0,
            shifts_deleted INTEGER NOT NULL DEFAULT 0,
            trigger TEXT NOT NULL DEFAULT 'auto',
            is_read INTEGER NOT NULL DEFAULT 0,
            synced_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_sync_logs_calendar ON sync_logs(calendar_id, synced_at);
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(schema_sql)
            finally:
                conn.close()

    def create_external_sync(self, record: ExternalSync) -> ExternalSync:
        now = _utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO external_syncs(
                    id, calendar_id, name, sync_type, calendar_url, color, display_mode,
                    auto_sync_interval, is_one_time_import, is_hidden, hide_from_stats,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.calendar_id,
                    record.name,
                    record.sync_type,
                    record.calendar_url,
                    record.color,
                    record.display_mode,
                    int(record.auto_sync_interval),
                    int(record.is_one_time_import),
                    int(record.is_hidden),
                    int(record.hide_from_stats),
                    serialize_datetime(record.created_at) or now,
                    serialize_datetime(record.updated_at) or now,
                ),
            )
        return self.get_external_sync(record.id) or record

    def get_external_sync(self, sync_id: str) -> ExternalSync | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM external_syncs WHERE id = ?", (sync_id,)).fetchone()
        return _sync_from_row(row) if row else None

    def list_external_syncs(self, calendar_id: str) -> list[ExternalSync]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM external_syncs
                WHERE calendar_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (calendar_id,),
            ).fetchall()
        return [_sync_from_row(row) for row in rows]

    def list_auto_sync_records(self) -> list[ExternalSync]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM external_syncs
                WHERE auto_sync_interval > 0 AND is_one_time_import = 0
                ORDER BY rowid
                """
            ).fetchall()
        return [_sync_from_row(row) for row in rows]

    def update_external_sync(self, sync_id: str, fields: dict[str, Any]) -> ExternalSync | None:
        updates = {key: value for key, value in fields.items() if key in SYNC_UPDATABLE_COLUMNS}
        now = _utc_now()
        with self._transaction() as conn:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            values: list[Any] = [int(v) if isinstance(v, bool) else v for v in updates.values()]
            sql = f"UPDATE external_syncs SET {assignments + ', ' if assignments else ''}updated_at = ? WHERE id = ?"
            cursor = conn.execute(sql, (*values, now, sync_id))
            if cursor.rowcount == 0:
                return None
            if "color" in updates:
                conn.execute(
                    "UPDATE shifts SET color = ?, updated_at = ? WHERE external_sync_id = ?",
                    (updates["color"], now, sync_id),
                )
        return self.get_external_sync(sync_id)

    def delete_external_sync(self, sync_id: str) -> int | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT id FROM external_syncs WHERE id = ?", (sync_id,)).fetchone()
            if row is None:
                return None
            cursor = conn.execute("DELETE FROM shifts WHERE external_sync_id = ?", (sync_id,))
            deleted_shifts = max(0, cursor.rowcount)
            conn.execute("DELETE FROM sync_logs WHERE external_sync_id = ?", (sync_id,))
            conn.execute("DELETE FROM external_syncs WHERE id = ?", (sync_id,))
        return deleted_shifts

    def list_shifts(self, calendar_id: str) -> list[Shift]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM shifts
                WHERE calendar_id = ?
                ORDER BY date, start_time, rowid
                """,
                (calendar_id,),
            ).fetchall()
        return [_shift_from_row(row) for row in rows]

    def list_sync_shifts(self, sync_id: str) -> list[Shift]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM shifts WHERE external_sync_id = ? ORDER BY date, start_time, rowid",
                (sync_id,),
            ).fetchall()
        return [_shift_from_row(row) for row in rows]

    def _insert_log(
        self,
        conn: sqlite3.Connection,
        *,
        sync: ExternalSync,
        status: str,
        trigger: str,
        synced_at: str,
        error_message: str | None = None,
        summary: DiffSummary | None = None,
    ) -> None:
        summary = summary or DiffSummary()
        conn.execute(
            """
            INSERT INTO sync_logs(
                id, calendar_id, external_sync_id, external_sync_name, status, error_message,
                shifts_created, shifts_updated, shifts_deleted, trigger, is_read, synced_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                str(uuid.uuid4()),
                sync.calendar_id,
                sync.id,
                sync.name,
                status,
                error_message,
                summary.created,
                summary.updated,
                summary.deleted,
                trigger,
                synced_at,
            ),
        )

    def apply_reconciliation(
        self,
        *,
        sync: ExternalSync,
        diff: ShiftDiff,
        synced_at: datetime,
        trigger: str,
        total_events: int = 0,
    ) -> DiffSummary:
        summary = DiffSummary(
            created=len(diff.inserts),
            updated=len(diff.updates),
            deleted=len(diff.deletes),
            total_events=total_events,
        )
        synced_text = serialize_datetime(synced_at) or _utc_now()
        try:
            with self._transaction() as conn:
                exists = conn.execute("SELECT 1 FROM external_syncs WHERE id = ?", (sync.id,)).fetchone()
                if exists is None:
                    raise PersistenceError("External sync was deleted during sync")
                _insert_shifts(conn, diff.inserts)
                _update_shifts(conn, diff.updates)
                _delete_shifts(conn, sync.id, diff.deletes)
                conn.execute(
                    """
                    UPDATE external_syncs
                    SET last_synced_at = ?, last_sync_status = 'success', last_sync_error = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (synced_text, synced_text, sync.id),
                )
                self._insert_log(
                    conn,
                    sync=sync,
                    status="success",
                    trigger=trigger,
                    synced_at=synced_text,
                    summary=summary,
                )
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Failed to apply sync changes: {exc}") from exc
        return summary

    def record_sync_failure(
        self,
        *,
        sync: ExternalSync,
        message: str,
        trigger: str,
        failed_at: datetime,
    ) -> None:
        failed_text = serialize_datetime(failed_at) or _utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE external_syncs
                SET last_sync_status = 'error', last_sync_error = ?
                WHERE id = ?
                """,
                (message, sync.id),
            )
            if cursor.rowcount == 0:
                return
            self._insert_log(
                conn,
                sync=sync,
                status="error",
                trigger=trigger,
                synced_at=failed_text,
                error_message=message,
            )

    def list_sync_logs(self, calendar_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, calendar_id, external_sync_id, external_sync_name, status, error_message,
                       shifts_created, shifts_updated, shifts_deleted, trigger, is_read, synced_at
                FROM sync_logs
                WHERE calendar_id = ?
                ORDER BY synced_at DESC, rowid DESC
                LIMIT ?
                """,
                (calendar_id, max(1, int(limit))),
            ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            output.append(
                {
                    "id": row["id"],
                    "calendarId": row["calendar_id"],
                    "externalSyncId": row["external_sync_id"],
                    "externalSyncName": row["external_sync_name"],
                    "status": row["status"],
                    "errorMessage": row["error_message"],
                    "shiftsCreated": int(row["shifts_created"]),
                    "shiftsUpdated": int(row["shifts_updated"]),
                    "shiftsDeleted": int(row["shifts_deleted"]),
                    "syncType": row["trigger"],
                    "isRead": bool(row["is_read"]),
                    "syncedAt": row["synced_at"],
                }
            )
        return output

    def mark_error_logs_read(self, calendar_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_logs SET is_read = 1 WHERE calendar_id = ? AND status = 'error'",
                (calendar_id,),
            )
        return max(0, cursor.rowcount)

    def delete_sync_logs(self, calendar_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_logs WHERE calendar_id = ?", (calendar_id,))
        return max(0, cursor.rowcount)
