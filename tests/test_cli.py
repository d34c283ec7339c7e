from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from typer.testing import CliRunner

from autotrack.cli import app
from autotrack.models import BookingStatus, EntrySource, LabelAttribution, TodoAttribution
from autotrack.store import TimeEntryStore

from .conftest import T0

runner = CliRunner()


@pytest.fixture()
def seeded_db(db_path):
    store = TimeEntryStore.open(db_path)
    try:
        planning = store.create(LabelAttribution("Planning"), EntrySource.MANUAL, T0)
        store.finalize(planning, T0 + timedelta(minutes=30))
        todo = store.create(
            TodoAttribution(todo_id="T-3"), EntrySource.TIMER, T0 + timedelta(hours=1)
        )
        store.finalize(todo, T0 + timedelta(hours=1, minutes=15))
        store.mark_reviewed([todo])
    finally:
        store.close()
    return db_path


def test_summary_prints_totals(seeded_db):
    result = runner.invoke(app, ["summary", "--date", "2024-03-04", "--db", str(seeded_db)])

    assert result.exit_code == 0, result.output
    assert "Summary for 2024-03-04" in result.output
    assert "Tracked time: 00:45:00" in result.output
    assert "Planning" in result.output
    assert "Todo T-3" in result.output
    assert "reviewed" in result.output


def test_summary_for_empty_day(seeded_db):
    result = runner.invoke(app, ["summary", "--date", "2024-03-05", "--db", str(seeded_db)])

    assert result.exit_code == 0
    assert "No time recorded" in result.output


def test_recover_closes_open_entries(db_path):
    store = TimeEntryStore.open(db_path)
    try:
        store.create(LabelAttribution("Crashed"), EntrySource.MANUAL, datetime.now() - timedelta(hours=1))
    finally:
        store.close()

    result = runner.invoke(app, ["recover", "--db", str(db_path)])

    assert result.exit_code == 0, result.output
    assert "Recovered 1 in-progress entries." in result.output
    store = TimeEntryStore.open(db_path)
    try:
        assert store.list_in_progress() == []
    finally:
        store.close()


def test_purge_uses_retention_option(seeded_db):
    store = TimeEntryStore.open(seeded_db)
    try:
        old = store.create(LabelAttribution("Old"), EntrySource.MANUAL, T0 - timedelta(days=30))
        store.finalize(old, T0 - timedelta(days=30) + timedelta(minutes=5))
        store.advance_booking_status([old], BookingStatus.BOOKED)
    finally:
        store.close()

    result = runner.invoke(app, ["purge", "--db", str(seeded_db), "--retention-days", "7"])

    assert result.exit_code == 0, result.output
    assert "Removed 1 booked entries older than 7 days." in result.output


def test_database_path_from_environment(seeded_db):
    result = runner.invoke(
        app, ["summary", "--date", "2024-03-04"], env={"AUTOTRACK_DB": str(seeded_db)}
    )

    assert result.exit_code == 0
    assert "Tracked time: 00:45:00" in result.output


def test_web_runs_uvicorn_with_configured_app(db_path, monkeypatch):
    import autotrack.cli
    import autotrack.server_runner

    captured = {}

    def fake_run(app, host, port, log_level):
        captured.update(app=app, host=host, port=port)
        app.state.store.close()

    monkeypatch.setattr(autotrack.cli, "_attach_log_file", lambda: None)
    monkeypatch.setattr(autotrack.server_runner.uvicorn, "run", fake_run)

    result = runner.invoke(
        app,
        ["web", "--db", str(db_path), "--port", "9001", "--min-switch", "10", "--no-autostart"],
    )

    assert result.exit_code == 0, result.output
    assert captured["port"] == 9001
    assert captured["app"].state.db_path == db_path
    assert captured["app"].state.coordinator.settings.minimum_switch_duration == timedelta(seconds=10)
