from __future__ import annotations

import uuid
from datetime import timedelta

from autotrack.db import database_connection, insert_entry, transaction
from autotrack.models import (
    ApplicationAttribution,
    EntrySource,
    LabelAttribution,
    TimeEntry,
    TrackingState,
)

from .conftest import T0, app_info


def _insert_open_entry(db_path, start, label):
    entry = TimeEntry(
        id=uuid.uuid4().hex,
        start_time=start,
        attribution=LabelAttribution(label=label),
        source=EntrySource.TIMER,
        label=label,
    )
    with database_connection(db_path) as conn:
        with transaction(conn):
            insert_entry(conn, entry)
    return entry.id


def test_recovery_closes_orphaned_entry_at_now(coordinator, store, clock):
    orphan = store.create(
        ApplicationAttribution(name="Editor", identifier="com.example.editor"),
        EntrySource.AUTO_DETECTED,
        T0 - timedelta(hours=1),
    )

    assert coordinator.recover_from_crash() == 1

    entry = store.get(orphan)
    assert entry.end_time == T0
    assert entry.duration_seconds == 3600
    assert entry.source is EntrySource.AUTO_DETECTED
    assert store.list_in_progress() == []


def test_recovery_is_idempotent(coordinator, store, clock):
    orphan = store.create(LabelAttribution("Review"), EntrySource.MANUAL, T0 - timedelta(hours=1))
    coordinator.recover_from_crash()

    clock.advance(minutes=30)
    assert coordinator.recover_from_crash() == 0
    assert store.get(orphan).end_time == T0


def test_recovery_closes_every_orphan(coordinator, store, db_path):
    first = _insert_open_entry(db_path, T0 - timedelta(hours=3), "First")
    second = _insert_open_entry(db_path, T0 - timedelta(hours=2), "Second")
    assert sorted(store.list_in_progress()) == sorted([first, second])

    assert coordinator.recover_from_crash() == 2
    assert store.list_in_progress() == []


def test_recovery_of_entry_from_the_future_closes_it_empty(coordinator, store):
    orphan = store.create(LabelAttribution("Skewed"), EntrySource.MANUAL, T0 + timedelta(hours=1))

    assert coordinator.recover_from_crash() == 1

    entry = store.get(orphan)
    assert entry.end_time == entry.start_time
    assert entry.duration_seconds == 0


def test_recovery_leaves_the_live_entry_alone(coordinator, store, focus):
    focus.current = app_info("Editor", T0)
    coordinator.start_tracking()

    assert coordinator.recover_from_crash() == 0
    assert len(store.list_in_progress()) == 1
    assert coordinator.status.state is TrackingState.TRACKING
