"""SQLite database layer for time entries."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .models import (
    ApplicationAttribution,
    Attribution,
    BookingStatus,
    EntrySource,
    LabelAttribution,
    TimeEntry,
    TodoAttribution,
)


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

_UNSET = object()

_COLUMNS = (
    "id",
    "start_time",
    "end_time",
    "duration_seconds",
    "in_progress",
    "attribution_kind",
    "application_name",
    "application_id",
    "window_title",
    "todo_id",
    "label",
    "source",
    "booking_status",
    "notes",
    "checkpoint_time",
    "created_at",
)


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block of statements in a single write transaction."""
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    conn.execute("COMMIT;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS time_entries (
            id TEXT PRIMARY KEY,
            start_time TEXT NOT NULL,
            end_time TEXT,
            duration_seconds REAL NOT NULL DEFAULT 0,
            in_progress INTEGER NOT NULL DEFAULT 1,
            attribution_kind TEXT NOT NULL,
            application_name TEXT,
            application_id TEXT,
            window_title TEXT,
            todo_id TEXT,
            label TEXT,
            source TEXT NOT NULL,
            booking_status TEXT NOT NULL DEFAULT 'unreviewed',
            notes TEXT NOT NULL DEFAULT '',
            checkpoint_time TEXT,
            created_at TEXT NOT NULL,
            CHECK ((in_progress = 1) = (end_time IS NULL))
        );

        CREATE INDEX IF NOT EXISTS idx_entries_start_time
            ON time_entries(start_time);

        CREATE INDEX IF NOT EXISTS idx_entries_in_progress
            ON time_entries(in_progress) WHERE in_progress = 1;
        """
    )


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(DATETIME_FMT) if value is not None else None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.strptime(value, DATETIME_FMT) if value else None


def _attribution_columns(attribution: Attribution) -> dict[str, object]:
    columns: dict[str, object] = {
        "attribution_kind": attribution.kind,
        "application_name": None,
        "application_id": None,
        "window_title": None,
        "todo_id": None,
    }
    if isinstance(attribution, ApplicationAttribution):
        columns["application_name"] = attribution.name
        columns["application_id"] = attribution.identifier
        columns["window_title"] = attribution.window_title
    elif isinstance(attribution, TodoAttribution):
        columns["todo_id"] = attribution.todo_id
    return columns


def _attribution_from_row(row: sqlite3.Row) -> Attribution:
    kind = row["attribution_kind"]
    if kind == ApplicationAttribution.kind:
        return ApplicationAttribution(
            name=row["application_name"] or "Unknown",
            identifier=row["application_id"] or "",
            window_title=row["window_title"],
        )
    if kind == TodoAttribution.kind:
        return TodoAttribution(todo_id=row["todo_id"], label=row["label"])
    return LabelAttribution(label=row["label"] or "")


def row_to_entry(row: sqlite3.Row) -> TimeEntry:
    return TimeEntry(
        id=row["id"],
        start_time=parse_datetime(row["start_time"]),
        end_time=parse_datetime(row["end_time"]),
        duration_seconds=row["duration_seconds"],
        attribution=_attribution_from_row(row),
        label=row["label"],
        source=EntrySource(row["source"]),
        booking_status=BookingStatus(row["booking_status"]),
        notes=row["notes"],
        checkpoint_time=parse_datetime(row["checkpoint_time"]),
        created_at=parse_datetime(row["created_at"]),
    )


def insert_entry(conn: sqlite3.Connection, entry: TimeEntry) -> None:
    values = {
        "id": entry.id,
        "start_time": format_datetime(entry.start_time),
        "end_time": format_datetime(entry.end_time),
        "duration_seconds": entry.duration_seconds,
        "in_progress": 1 if entry.in_progress else 0,
        **_attribution_columns(entry.attribution),
        "label": entry.label,
        "source": entry.source.value,
        "booking_status": entry.booking_status.value,
        "notes": entry.notes,
        "checkpoint_time": format_datetime(entry.checkpoint_time),
        "created_at": format_datetime(entry.created_at),
    }
    conn.execute(
        f"""
        INSERT INTO time_entries ({', '.join(_COLUMNS)})
        VALUES ({', '.join('?' for _ in _COLUMNS)})
        """,
        [values[column] for column in _COLUMNS],
    )


def fetch_entry(conn: sqlite3.Connection, entry_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM time_entries WHERE id = ?", (entry_id,)
    ).fetchone()


def fetch_in_progress_ids(conn: sqlite3.Connection) -> list[str]:
    return [
        row["id"]
        for row in conn.execute(
            "SELECT id FROM time_entries WHERE in_progress = 1 ORDER BY start_time"
        )
    ]


def fetch_entries_between(
    conn: sqlite3.Connection, start: datetime, end: datetime
) -> list[sqlite3.Row]:
    """Fetch entries starting in ``[start, end)`` ordered by start time."""
    return list(
        conn.execute(
            """
            SELECT *
            FROM time_entries
            WHERE start_time >= ? AND start_time < ?
            ORDER BY start_time;
            """,
            (format_datetime(start), format_datetime(end)),
        )
    )


def update_entry(
    conn: sqlite3.Connection,
    entry_id: str,
    *,
    start_time: Optional[datetime] = None,
    end_time: object = _UNSET,
    duration_seconds: Optional[float] = None,
    label: object = _UNSET,
    notes: Optional[str] = None,
    attribution: Optional[Attribution] = None,
    source: Optional[EntrySource] = None,
    booking_status: Optional[BookingStatus] = None,
    checkpoint_time: Optional[datetime] = None,
) -> None:
    """Update a single entry record."""
    fields: list[str] = []
    params: list[object] = []

    if start_time is not None:
        fields.append("start_time = ?")
        params.append(format_datetime(start_time))
    if end_time is not _UNSET:
        fields.append("end_time = ?")
        params.append(format_datetime(end_time))  # type: ignore[arg-type]
        fields.append("in_progress = ?")
        params.append(1 if end_time is None else 0)
    if duration_seconds is not None:
        fields.append("duration_seconds = ?")
        params.append(duration_seconds)
    if label is not _UNSET:
        fields.append("label = ?")
        params.append(label)
    if notes is not None:
        fields.append("notes = ?")
        params.append(notes)
    if attribution is not None:
        for column, value in _attribution_columns(attribution).items():
            fields.append(f"{column} = ?")
            params.append(value)
    if source is not None:
        fields.append("source = ?")
        params.append(source.value)
    if booking_status is not None:
        fields.append("booking_status = ?")
        params.append(booking_status.value)
    if checkpoint_time is not None:
        fields.append("checkpoint_time = ?")
        params.append(format_datetime(checkpoint_time))

    if not fields:
        return

    params.append(entry_id)
    cur = conn.execute(
        f"UPDATE time_entries SET {', '.join(fields)} WHERE id = ?",
        params,
    )
    if cur.rowcount == 0:
        raise LookupError(entry_id)


def delete_entries(conn: sqlite3.Connection, entry_ids: Iterable[str]) -> int:
    ids = list(entry_ids)
    if not ids:
        return 0
    cur = conn.execute(
        f"DELETE FROM time_entries WHERE id IN ({', '.join('?' for _ in ids)})",
        ids,
    )
    return cur.rowcount


def delete_booked_before(conn: sqlite3.Connection, cutoff: datetime) -> int:
    cur = conn.execute(
        """
        DELETE FROM time_entries
        WHERE booking_status = ? AND in_progress = 0 AND start_time < ?
        """,
        (BookingStatus.BOOKED.value, format_datetime(cutoff)),
    )
    return cur.rowcount
