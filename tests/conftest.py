"""Shared fixtures: deterministic clock, inline dispatcher, fake timers and observers."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from autotrack.config import TrackerSettings
from autotrack.coordinator import TrackingCoordinator
from autotrack.errors import PermissionDenied
from autotrack.models import ApplicationInfo, PowerEvent
from autotrack.observers import FocusObserver, IdleObserver
from autotrack.store import TimeEntryStore

T0 = datetime(2024, 3, 4, 9, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return value


class InlineDispatcher:
    """Runs everything immediately on the calling thread."""

    is_running = True

    def start(self) -> None:
        pass

    def stop(self, timeout: float = 10.0) -> None:
        pass

    def in_worker(self) -> bool:
        return True

    def submit(self, fn, *args):
        fn(*args)

    def call(self, fn, *args):
        return fn(*args)


class FakeTimer:
    def __init__(self, name: str, seconds: float, callback: Callable[[], None], recurring: bool) -> None:
        self.name = name
        self.seconds = seconds
        self.callback = callback
        self.recurring = recurring
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.callback()


class FakeScheduler:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None], name: str = "timer") -> FakeTimer:
        timer = FakeTimer(name, delay, callback, recurring=False)
        self.timers.append(timer)
        return timer

    def call_every(self, interval: float, callback: Callable[[], None], name: str = "timer") -> FakeTimer:
        timer = FakeTimer(name, interval, callback, recurring=True)
        self.timers.append(timer)
        return timer

    def active(self, name: Optional[str] = None) -> list[FakeTimer]:
        return [
            timer
            for timer in self.timers
            if not timer.cancelled and (name is None or timer.name == name)
        ]

    def fire(self, name: str) -> None:
        timers = self.active(name)
        assert len(timers) == 1, f"expected one active {name} timer, found {len(timers)}"
        timers[0].fire()


class FakeFocusObserver(FocusObserver):
    def __init__(self, permission: bool = True) -> None:
        self.permission = permission
        self.current: Optional[ApplicationInfo] = None
        self.on_change = None

    @property
    def running(self) -> bool:
        return self.on_change is not None

    def start(self, on_change) -> None:
        if not self.permission:
            raise PermissionDenied("not allowed")
        self.on_change = on_change

    def stop(self) -> None:
        self.on_change = None

    def current_application(self) -> Optional[ApplicationInfo]:
        return self.current

    def has_permission(self) -> bool:
        return self.permission

    def emit(self, info: ApplicationInfo) -> None:
        if self.on_change is not None:
            self.on_change(info)


class FakeIdleObserver(IdleObserver):
    def __init__(self) -> None:
        self.on_event = None

    @property
    def running(self) -> bool:
        return self.on_event is not None

    def start(self, on_event) -> None:
        self.on_event = on_event

    def stop(self) -> None:
        self.on_event = None

    def emit(self, event: PowerEvent, timestamp: datetime) -> None:
        if self.on_event is not None:
            self.on_event(event, timestamp)


def app_info(name: str, timestamp: datetime) -> ApplicationInfo:
    return ApplicationInfo(
        name=name, identifier=f"com.example.{name.lower()}", timestamp=timestamp
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "entries.sqlite3"


@pytest.fixture()
def store(db_path: Path) -> Generator[TimeEntryStore, None, None]:
    store = TimeEntryStore.open(db_path)
    try:
        yield store
    finally:
        store.close()


@pytest.fixture()
def focus() -> FakeFocusObserver:
    return FakeFocusObserver()


@pytest.fixture()
def idle() -> FakeIdleObserver:
    return FakeIdleObserver()


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture()
def settings() -> TrackerSettings:
    return TrackerSettings()


@pytest.fixture()
def coordinator(
    store: TimeEntryStore,
    focus: FakeFocusObserver,
    idle: FakeIdleObserver,
    scheduler: FakeScheduler,
    clock: FakeClock,
    settings: TrackerSettings,
) -> TrackingCoordinator:
    return TrackingCoordinator(
        store,
        focus,
        idle,
        settings,
        dispatcher=InlineDispatcher(),  # type: ignore[arg-type]
        scheduler=scheduler,  # type: ignore[arg-type]
        clock=clock,
    )
