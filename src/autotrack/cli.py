"""Command-line interface for the tracker."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from .config import TrackerSettings
from .errors import PersistenceError
from .models import TrackingState
from .paths import get_log_path, resolve_db_path

app = typer.Typer(help="Automatic, crash-safe time tracking.")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


def _attach_log_file() -> None:
    handler = logging.FileHandler(get_log_path(), encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def _build_settings(
    min_switch_seconds: float,
    checkpoint_seconds: float,
    idle_minutes: float,
    sample_seconds: float,
    retention_days: int,
) -> TrackerSettings:
    return TrackerSettings.from_intervals(
        min_switch_seconds=min_switch_seconds,
        checkpoint_seconds=checkpoint_seconds,
        idle_minutes=idle_minutes,
        sample_seconds=sample_seconds,
        retention_days=retention_days,
    )


DbOption = typer.Option(
    None,
    "--db",
    path_type=Path,
    envvar="AUTOTRACK_DB",
    help="Location of the time entry SQLite database.",
)
MinSwitchOption = typer.Option(
    30.0,
    "--min-switch",
    min=0.0,
    envvar="AUTOTRACK_MIN_SWITCH_SECONDS",
    help="Seconds an application must hold focus before a new entry starts.",
)
CheckpointOption = typer.Option(
    60.0,
    "--checkpoint-interval",
    min=1.0,
    envvar="AUTOTRACK_CHECKPOINT_SECONDS",
    help="Seconds between checkpoints of the running entry.",
)
IdleOption = typer.Option(
    5.0,
    "--idle-threshold",
    min=0.5,
    envvar="AUTOTRACK_IDLE_MINUTES",
    help="Minutes of inactivity before tracking pauses.",
)
IntervalOption = typer.Option(
    5.0,
    "--interval",
    min=1.0,
    help="Idle sampling interval in seconds.",
)
RetentionOption = typer.Option(
    90,
    "--retention-days",
    min=1,
    envvar="AUTOTRACK_RETENTION_DAYS",
    help="Days to keep booked entries before purging them.",
)


@app.command()
def track(
    db_path: Optional[Path] = DbOption,
    min_switch_seconds: float = MinSwitchOption,
    checkpoint_seconds: float = CheckpointOption,
    idle_minutes: float = IdleOption,
    sample_seconds: float = IntervalOption,
    retention_days: int = RetentionOption,
) -> None:
    """Track the foreground application until interrupted."""
    from .coordinator import TrackingCoordinator
    from .observers import create_default_observers
    from .store import TimeEntryStore

    _attach_log_file()
    settings = _build_settings(
        min_switch_seconds, checkpoint_seconds, idle_minutes, sample_seconds, retention_days
    )
    store = TimeEntryStore.open(resolve_db_path(db_path))
    focus, idle = create_default_observers(settings)
    coordinator = TrackingCoordinator(store, focus, idle, settings)
    try:
        coordinator.recover_from_crash()
        store.purge_expired(settings.retention_days)
        if coordinator.start_tracking() is TrackingState.PERMISSION_REQUIRED:
            typer.echo("Foreground application tracking is not available on this system.", err=True)
            raise typer.Exit(code=1)
        typer.echo("Tracking; press Ctrl+C to stop.")
        threading.Event().wait()
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted; finalizing the running entry.")
    finally:
        coordinator.shutdown()
        store.close()


@app.command()
def recover(db_path: Optional[Path] = DbOption) -> None:
    """Close entries left in progress by an unclean shutdown."""
    from .coordinator import TrackingCoordinator
    from .observers import create_default_observers
    from .store import TimeEntryStore

    settings = TrackerSettings()
    try:
        store = TimeEntryStore.open(resolve_db_path(db_path))
    except PersistenceError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    coordinator = TrackingCoordinator(store, *create_default_observers(settings), settings)
    try:
        count = coordinator.recover_from_crash()
    finally:
        coordinator.shutdown()
        store.close()
    typer.echo(f"Recovered {count} in-progress entries.")


@app.command()
def purge(
    db_path: Optional[Path] = DbOption,
    retention_days: int = RetentionOption,
) -> None:
    """Delete booked entries older than the retention window."""
    from .store import TimeEntryStore

    store = TimeEntryStore.open(resolve_db_path(db_path))
    try:
        removed = store.purge_expired(retention_days)
    finally:
        store.close()
    typer.echo(f"Removed {removed} booked entries older than {retention_days} days.")


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Print a high-level summary for a specific day."""
    from .reporting import SummaryPrinter

    target = datetime.strptime(date, "%Y-%m-%d") if date else datetime.now()
    summary_printer = SummaryPrinter(db_path=resolve_db_path(db_path))
    summary_printer.print_daily_summary(target)


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the API."
    ),
    db_path: Optional[Path] = DbOption,
    min_switch_seconds: float = MinSwitchOption,
    checkpoint_seconds: float = CheckpointOption,
    idle_minutes: float = IdleOption,
    sample_seconds: float = IntervalOption,
    retention_days: int = RetentionOption,
    autostart: bool = typer.Option(
        True,
        "--autostart/--no-autostart",
        help="Start automatic tracking as soon as the server is up.",
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the interactive API docs in your default browser.",
    ),
) -> None:
    """Serve the tracking control API with the coordinator running in-process."""
    from .server_runner import run_server

    _attach_log_file()
    run_server(
        host=host,
        port=port,
        db_path=db_path,
        settings=_build_settings(
            min_switch_seconds, checkpoint_seconds, idle_minutes, sample_seconds, retention_days
        ),
        autostart=autostart,
        open_browser=open_browser,
    )
