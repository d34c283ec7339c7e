"""Locations of the database and log file."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from platformdirs import PlatformDirs


APP_NAME = "AutoTrack"
APP_AUTHOR = "AutoTrack"


def get_data_dir() -> Path:
    """Return the per-user data directory, creating it if needed."""
    dirs = PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)
    path = Path(dirs.user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_db_path() -> Path:
    return get_data_dir() / "entries.sqlite3"


def get_log_path() -> Path:
    return get_data_dir() / "tracker.log"


def resolve_db_path(override: Optional[Path] = None) -> Path:
    """Return ``override`` (with its parent created) or the default database."""
    if override is None:
        return get_db_path()
    path = Path(override).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path
