"""Exception hierarchy shared by the store, observers and coordinator."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for errors raised by autotrack."""


class PermissionDenied(TrackerError):
    """The environment does not allow observing the foreground application."""


class PersistenceError(TrackerError):
    """A store operation failed at the database layer."""


class NotFoundError(TrackerError):
    """No time entry exists for the given identifier."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"No time entry found for id={entry_id}")
        self.entry_id = entry_id


class ConflictError(TrackerError):
    """Creating an entry would leave more than one entry in progress."""

    def __init__(self, existing_ids: list[str]) -> None:
        super().__init__(
            f"Entry already in progress: {', '.join(existing_ids)}"
        )
        self.existing_ids = existing_ids


class InvalidOperationError(TrackerError):
    """An edit, merge, split or booking transition was rejected."""
