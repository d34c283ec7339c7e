"""Domain models for recorded time entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class EntrySource(str, Enum):
    MANUAL = "manual"
    TIMER = "timer"
    AUTO_DETECTED = "auto_detected"
    IMPORTED = "imported"
    EDITED = "edited"


class BookingStatus(str, Enum):
    """Review workflow stage; members are declared in workflow order."""

    UNREVIEWED = "unreviewed"
    REVIEWED = "reviewed"
    EXPORTED = "exported"
    BOOKED = "booked"

    @property
    def rank(self) -> int:
        return list(BookingStatus).index(self)


class TrackingState(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    PAUSED = "paused"
    PERMISSION_REQUIRED = "permission_required"


class PauseReason(str, Enum):
    USER_REQUESTED = "user_requested"
    SYSTEM_IDLE = "system_idle"
    SYSTEM_SLEEP = "system_sleep"
    SCREEN_LOCKED = "screen_locked"
    MANUAL_TIMER_TAKEOVER = "manual_timer_takeover"


class PowerEvent(str, Enum):
    IDLE_STARTED = "idle_started"
    IDLE_ENDED = "idle_ended"
    SLEEP_STARTED = "sleep_started"
    WAKE = "wake"
    SCREEN_LOCKED = "screen_locked"
    SCREEN_UNLOCKED = "screen_unlocked"


@dataclass(frozen=True, slots=True)
class ApplicationInfo:
    """Snapshot of the foreground application reported by a focus observer."""

    name: str
    identifier: str
    timestamp: datetime
    pid: Optional[int] = None
    window_title: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ApplicationAttribution:
    name: str
    identifier: str
    window_title: Optional[str] = None

    kind = "application"

    @property
    def display_label(self) -> str:
        return self.name

    @classmethod
    def from_info(cls, info: ApplicationInfo) -> "ApplicationAttribution":
        return cls(name=info.name, identifier=info.identifier, window_title=info.window_title)


@dataclass(frozen=True, slots=True)
class LabelAttribution:
    label: str

    kind = "label"

    @property
    def display_label(self) -> str:
        return self.label


@dataclass(frozen=True, slots=True)
class TodoAttribution:
    todo_id: str
    label: Optional[str] = None

    kind = "todo"

    @property
    def display_label(self) -> str:
        return self.label or f"Todo {self.todo_id}"


Attribution = Union[ApplicationAttribution, LabelAttribution, TodoAttribution]


@dataclass(slots=True)
class TimeEntry:
    """A contiguous interval of time attributed to a single activity."""

    id: str
    start_time: datetime
    attribution: Attribution
    source: EntrySource
    end_time: Optional[datetime] = None
    duration_seconds: float = 0.0
    label: Optional[str] = None
    booking_status: BookingStatus = BookingStatus.UNREVIEWED
    notes: str = ""
    checkpoint_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def in_progress(self) -> bool:
        return self.end_time is None

    def effective_duration(self, now: Optional[datetime] = None) -> float:
        if self.end_time is not None:
            return (self.end_time - self.start_time).total_seconds()
        return ((now or datetime.now()) - self.start_time).total_seconds()

    @property
    def formatted_duration(self) -> str:
        total_seconds = int(self.effective_duration())
        hours, remainder = divmod(total_seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes:02d}m"
        return f"{minutes}m {seconds:02d}s"

    @property
    def display_label(self) -> str:
        return self.label or self.attribution.display_label


@dataclass(slots=True)
class EntryChanges:
    """Explicit user edit of a finalized entry. ``None`` leaves a field as is."""

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    label: Optional[str] = None
    notes: Optional[str] = None
    todo_id: Optional[str] = None
    remove_todo: bool = False
    booking_status: Optional[BookingStatus] = None


@dataclass(frozen=True, slots=True)
class TrackingStatus:
    """Read-only view of the coordinator published to the UI."""

    state: TrackingState
    pause_reason: Optional[PauseReason] = None
    label: Optional[str] = None
    elapsed_seconds: int = 0
    manual_timer_active: bool = False
