from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from epacta.models import CalendarEvent, CalendarSource, EpactaMetadata, parse_iso_datetime


UPSERT_EVENT_SQL = """
INSERT INTO calendar_events(
    id, calendar_id, external_uid, title, description,
    start_time, end_time, all_day, location, metadata_json
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(calendar_id, external_uid) DO UPDATE SET
    title = excluded.title,
    description = excluded.description,
    start_time = excluded.start_time,
    end_time = excluded.end_time,
    all_day = excluded.all_day,
    location = excluded.location,
    metadata_json = excluded.metadata_json
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_metadata(metadata: dict[str, Any] | None) -> str | None:
    if metadata is None:
        return None
    return json.dumps(metadata, ensure_ascii=False)


def _load_metadata(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    payload = json.loads(raw)
    return payload if isinstance(payload, dict) else None


def _event_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["all_day"] = bool(item["all_day"])
    item["metadata"] = _load_metadata(item.pop("metadata_json"))
    return item


def _calendar_source(row: sqlite3.Row) -> CalendarSource:
    return CalendarSource(
        calendar_id=str(row["id"]),
        name=str(row["name"]),
        url=str(row["url"]),
        color=str(row["color"]),
        is_epacta=bool(row["is_epacta"]),
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
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendars (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            color TEXT NOT NULL,
            is_epacta INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendar_events (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            external_uid TEXT,
            title TEXT NOT NULL,
            description TEXT,
            description_override TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            location TEXT,
            metadata_json TEXT,
            UNIQUE (calendar_id, external_uid)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            fetched INTEGER NOT NULL,
            upserted INTEGER NOT NULL,
            deleted INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def add_calendar(
        self,
        *,
        name: str,
        url: str,
        is_epacta: bool = False,
        color: str = "#3b82f6",
    ) -> CalendarSource:
        source = CalendarSource(
            calendar_id=uuid.uuid4().hex,
            name=str(name).strip(),
            url=str(url).strip(),
            color=str(color).strip() or "#3b82f6",
            is_epacta=bool(is_epacta),
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendars(id, name, url, color, is_epacta, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (source.calendar_id, source.name, source.url, source.color, int(source.is_epacta), _utc_now()),
                )
                conn.commit()
        return source

    def list_calendars(self) -> list[CalendarSource]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, name, url, color, is_epacta
                    FROM calendars
                    ORDER BY name
                    """
                ).fetchall()
        return [_calendar_source(row) for row in rows]

    def get_calendar(self, calendar_id: str) -> CalendarSource | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, name, url, color, is_epacta
                    FROM calendars
                    WHERE id = ?
                    """,
                    (calendar_id,),
                ).fetchone()
        return _calendar_source(row) if row else None

    def delete_calendar(self, calendar_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM calendar_events WHERE calendar_id = ?", (calendar_id,))
                cursor = conn.execute("DELETE FROM calendars WHERE id = ?", (calendar_id,))
                conn.commit()
                return cursor.rowcount > 0

    def list_by_calendar(self, calendar_id: str) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT external_uid, description_override
                    FROM calendar_events
                    WHERE calendar_id = ?
                    """,
                    (calendar_id,),
                ).fetchall()
        return [dict(row) for row in rows]

    def upsert_batch(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        params = [
            (
                uuid.uuid4().hex,
                row["calendar_id"],
                row["external_uid"],
                row.get("title") or "",
                row.get("description"),
                row["start_time"],
                row.get("end_time"),
                int(bool(row.get("all_day"))),
                row.get("location"),
                _dump_metadata(row.get("metadata")),
            )
            for row in rows
        ]
        with self._lock:
            with self._connect() as conn:
                conn.executemany(UPSERT_EVENT_SQL, params)
                conn.commit()

    def delete_where_uid_not_in(self, calendar_id: str, external_uids: Iterable[str]) -> int:
        keep = [(uid,) for uid in set(external_uids)]
        with self._lock:
            with self._connect() as conn:
                conn.execute("CREATE TEMP TABLE IF NOT EXISTS keep_uids (external_uid TEXT PRIMARY KEY)")
                conn.execute("DELETE FROM keep_uids")
                conn.executemany("INSERT INTO keep_uids(external_uid) VALUES (?)", keep)
                cursor = conn.execute(
                    """
                    DELETE FROM calendar_events
                    WHERE calendar_id = ?
                      AND (external_uid IS NULL OR external_uid NOT IN (SELECT external_uid FROM keep_uids))
                    """,
                    (calendar_id,),
                )
                conn.commit()
                return cursor.rowcount

    def get_event(self, event_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, calendar_id, external_uid, title, description, description_override,
                           start_time, end_time, all_day, location, metadata_json
                    FROM calendar_events
                    WHERE id = ?
                    """,
                    (event_id,),
                ).fetchone()
        return _event_row(row) if row else None

    def get_event_by_uid(self, calendar_id: str, external_uid: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, calendar_id, external_uid, title, description, description_override,
                           start_time, end_time, all_day, location, metadata_json
                    FROM calendar_events
                    WHERE calendar_id = ? AND external_uid = ?
                    """,
                    (calendar_id, external_uid),
                ).fetchone()
        return _event_row(row) if row else None

    def update_override(
        self,
        event_id: str,
        description_override: str | None,
        metadata: dict[str, Any] | None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE calendar_events
                    SET description_override = ?, metadata_json = ?
                    WHERE id = ?
                    """,
                    (description_override, _dump_metadata(metadata), event_id),
                )
                conn.commit()

    def cached_events(self, calendar_ids: list[str]) -> list[CalendarEvent]:
        ids = [str(x) for x in calendar_ids if str(x).strip()]
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, calendar_id, external_uid, title, description, description_override,
                           start_time, end_time, all_day, location, metadata_json
                    FROM calendar_events
                    WHERE calendar_id IN ({placeholders})
                    ORDER BY start_time, id
                    """,  # nosec B608
                    ids,
                ).fetchall()
        events: list[CalendarEvent] = []
        for row in rows:
            item = _event_row(row)
            raw_description = str(item["description"] or "")
            override = item["description_override"]
            metadata = item["metadata"]
            events.append(
                CalendarEvent(
                    id=str(item["id"]),
                    title=str(item["title"] or ""),
                    start=parse_iso_datetime(item["start_time"]),
                    end=parse_iso_datetime(item["end_time"]),
                    all_day=item["all_day"],
                    location=str(item["location"] or ""),
                    description=override or raw_description,
                    raw_description=raw_description,
                    description_override=override,
                    metadata=EpactaMetadata.from_dict(metadata) if metadata is not None else None,
                    calendar_id=str(item["calendar_id"]),
                )
            )
        events.sort(key=lambda event: event.start)
        return events

    def start_sync_run(self, *, calendar_id: str, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, calendar_id, trigger, status, message, duration_ms, fetched, upserted, deleted
                    )
                    VALUES (?, ?, ?, ?, ?, 0, 0, 0, 0)
                    """,
                    (_utc_now(), calendar_id, trigger, "running", message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        fetched: int,
        upserted: int,
        deleted: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, fetched = ?, upserted = ?, deleted = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(fetched),
                        int(upserted),
                        int(deleted),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20, calendar_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, calendar_id, trigger, status, message,
                               duration_ms, fetched, upserted, deleted
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, calendar_id, trigger, status, message,
                               duration_ms, fetched, upserted, deleted
                        FROM sync_runs
                        WHERE calendar_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (calendar_id, max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]
