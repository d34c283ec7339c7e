"""Durable lifecycle operations for time entries."""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .db import (
    delete_booked_before,
    delete_entries,
    fetch_entries_between,
    fetch_entry,
    fetch_in_progress_ids,
    insert_entry,
    open_database,
    row_to_entry,
    transaction,
    update_entry,
)
from .errors import ConflictError, InvalidOperationError, NotFoundError, PersistenceError
from .models import (
    Attribution,
    BookingStatus,
    EntryChanges,
    EntrySource,
    LabelAttribution,
    TimeEntry,
    TodoAttribution,
)

logger = logging.getLogger(__name__)


class TimeEntryStore:
    """Thread-safe access to the ``time_entries`` table.

    Every public method either completes or raises a :class:`TrackerError`
    subclass; raw ``sqlite3`` errors are translated into
    :class:`PersistenceError`.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    @classmethod
    def open(cls, db_path: Path) -> "TimeEntryStore":
        try:
            conn = open_database(Path(db_path), check_same_thread=False)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {db_path}: {exc}") from exc
        return cls(conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _locked(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    def _require(self, conn: sqlite3.Connection, entry_id: str) -> TimeEntry:
        row = fetch_entry(conn, entry_id)
        if row is None:
            raise NotFoundError(entry_id)
        return row_to_entry(row)

    # Lifecycle

    def create(
        self,
        attribution: Attribution,
        source: EntrySource,
        start: datetime,
        label: Optional[str] = None,
    ) -> str:
        """Insert a new in-progress entry and return its identifier."""
        if label is None and isinstance(attribution, (LabelAttribution, TodoAttribution)):
            label = attribution.label
        entry = TimeEntry(
            id=uuid.uuid4().hex,
            start_time=start,
            attribution=attribution,
            source=source,
            label=label,
        )
        with self._locked() as conn:
            with transaction(conn):
                existing = fetch_in_progress_ids(conn)
                if existing:
                    raise ConflictError(existing)
                insert_entry(conn, entry)
        logger.debug("Created entry %s (%s) at %s", entry.id, entry.display_label, start)
        return entry.id

    def finalize(self, entry_id: str, end: datetime) -> None:
        """Close an entry at ``end``; finalizing a closed entry is a no-op."""
        with self._locked() as conn:
            entry = self._require(conn, entry_id)
            if not entry.in_progress:
                logger.debug("Entry %s already finalized; ignoring.", entry_id)
                return
            if end < entry.start_time:
                raise ValueError(
                    f"end {end} precedes start {entry.start_time} of entry {entry_id}"
                )
            update_entry(
                conn,
                entry_id,
                end_time=end,
                duration_seconds=(end - entry.start_time).total_seconds(),
            )
        logger.debug("Finalized entry %s at %s", entry_id, end)

    def checkpoint(self, entry_id: str, as_of: datetime) -> None:
        """Persist the running duration of an in-progress entry."""
        with self._locked() as conn:
            entry = self._require(conn, entry_id)
            if not entry.in_progress:
                return
            update_entry(
                conn,
                entry_id,
                duration_seconds=max((as_of - entry.start_time).total_seconds(), 0.0),
                checkpoint_time=as_of,
            )

    def list_in_progress(self) -> list[str]:
        with self._locked() as conn:
            return fetch_in_progress_ids(conn)

    def purge_expired(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete booked entries older than the retention window."""
        cutoff = (now or datetime.now()) - timedelta(days=retention_days)
        with self._locked() as conn:
            count = delete_booked_before(conn, cutoff)
        logger.info("Purged %d booked entries started before %s", count, cutoff)
        return count

    # Queries

    def get(self, entry_id: str) -> TimeEntry:
        with self._locked() as conn:
            return self._require(conn, entry_id)

    def entries_between(self, start: datetime, end: datetime) -> list[TimeEntry]:
        with self._locked() as conn:
            rows = fetch_entries_between(conn, start, end)
        return [row_to_entry(row) for row in rows]

    def entries_for_day(self, day: datetime) -> list[TimeEntry]:
        start = day.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.entries_between(start, start + timedelta(days=1))

    # Review and edit

    def update(self, entry_id: str, changes: EntryChanges) -> TimeEntry:
        """Apply an explicit user edit to a finalized entry.

        Running entries belong to the coordinator and are never edited here.
        """
        with self._locked() as conn:
            with transaction(conn):
                entry = self._require(conn, entry_id)
                if entry.in_progress:
                    raise InvalidOperationError("In-progress entries cannot be edited")
                start = changes.start_time or entry.start_time
                end = changes.end_time or entry.end_time
                times_changed = start != entry.start_time or end != entry.end_time
                if end is not None and end < start:
                    raise InvalidOperationError("end_time must not precede start_time")

                attribution: Optional[Attribution] = None
                if changes.remove_todo and isinstance(entry.attribution, TodoAttribution):
                    attribution = LabelAttribution(label=entry.display_label)
                elif changes.todo_id is not None:
                    attribution = TodoAttribution(
                        todo_id=changes.todo_id, label=changes.label or entry.label
                    )
                elif changes.label is not None and isinstance(
                    entry.attribution, LabelAttribution
                ):
                    attribution = LabelAttribution(label=changes.label)

                kwargs: dict[str, object] = {}
                if times_changed:
                    kwargs.update(
                        start_time=start,
                        end_time=end,
                        duration_seconds=(end - start).total_seconds(),
                        source=EntrySource.EDITED,
                    )
                if changes.label is not None:
                    kwargs["label"] = changes.label
                elif attribution is not None and attribution.kind == LabelAttribution.kind:
                    kwargs["label"] = attribution.label
                update_entry(
                    conn,
                    entry_id,
                    notes=changes.notes,
                    attribution=attribution,
                    booking_status=changes.booking_status,
                    **kwargs,
                )
                return self._require(conn, entry_id)

    def advance_booking_status(
        self, entry_ids: Iterable[str], status: BookingStatus
    ) -> None:
        """Move entries forward to ``status``; backward moves are rejected."""
        with self._locked() as conn:
            with transaction(conn):
                for entry_id in entry_ids:
                    entry = self._require(conn, entry_id)
                    if status.rank < entry.booking_status.rank:
                        raise InvalidOperationError(
                            f"Entry {entry_id} is {entry.booking_status.value}; "
                            f"cannot move back to {status.value}"
                        )
                    if entry.in_progress:
                        raise InvalidOperationError(
                            f"Entry {entry_id} is still in progress"
                        )
                    update_entry(conn, entry_id, booking_status=status)

    def mark_reviewed(self, entry_ids: Iterable[str]) -> int:
        """Mark unreviewed entries as reviewed; unknown ids are skipped."""
        changed = 0
        with self._locked() as conn:
            with transaction(conn):
                for entry_id in entry_ids:
                    row = fetch_entry(conn, entry_id)
                    if row is None:
                        continue
                    entry = row_to_entry(row)
                    if entry.booking_status is BookingStatus.UNREVIEWED and not entry.in_progress:
                        update_entry(conn, entry_id, booking_status=BookingStatus.REVIEWED)
                        changed += 1
        return changed

    def merge(self, entry_ids: Iterable[str]) -> str:
        """Replace two or more finalized entries with one spanning all of them."""
        ids = list(dict.fromkeys(entry_ids))
        if len(ids) < 2:
            raise InvalidOperationError("Need at least 2 entries to merge")
        with self._locked() as conn:
            with transaction(conn):
                entries = sorted(
                    (self._require(conn, entry_id) for entry_id in ids),
                    key=lambda item: item.start_time,
                )
                if any(entry.in_progress for entry in entries):
                    raise InvalidOperationError("In-progress entries cannot be merged")
                first = entries[0]
                merged = TimeEntry(
                    id=uuid.uuid4().hex,
                    start_time=first.start_time,
                    end_time=max(entry.end_time for entry in entries),
                    duration_seconds=sum(entry.duration_seconds for entry in entries),
                    attribution=first.attribution,
                    label=first.label,
                    source=EntrySource.EDITED,
                    notes="\n".join(entry.notes for entry in entries if entry.notes),
                )
                insert_entry(conn, merged)
                delete_entries(conn, ids)
        logger.info("Merged %d entries into %s", len(ids), merged.id)
        return merged.id

    def split(self, entry_id: str, at: datetime) -> tuple[str, str]:
        """Split a finalized entry at ``at`` into two adjacent entries."""
        with self._locked() as conn:
            with transaction(conn):
                entry = self._require(conn, entry_id)
                if entry.in_progress:
                    raise InvalidOperationError("In-progress entries cannot be split")
                if not entry.start_time < at < entry.end_time:
                    raise InvalidOperationError(
                        "Split time must be between entry start and end"
                    )
                second = TimeEntry(
                    id=uuid.uuid4().hex,
                    start_time=at,
                    end_time=entry.end_time,
                    duration_seconds=(entry.end_time - at).total_seconds(),
                    attribution=entry.attribution,
                    label=entry.label,
                    source=entry.source,
                    booking_status=entry.booking_status,
                    notes=entry.notes,
                )
                insert_entry(conn, second)
                update_entry(
                    conn,
                    entry_id,
                    end_time=at,
                    duration_seconds=(at - entry.start_time).total_seconds(),
                )
        return entry_id, second.id


