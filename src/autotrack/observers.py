"""Foreground-application and idle/power observers.

Observers never touch tracking state themselves; they only invoke the
callback handed to :meth:`start`, from their own polling thread. The
coordinator is responsible for moving those calls onto its serialized
execution context.
"""

from __future__ import annotations

import ctypes
import logging
import sys
import threading
from abc import ABC, abstractmethod
from ctypes import wintypes
from datetime import datetime
from typing import Callable, Optional, Protocol

import psutil

from .config import TrackerSettings
from .errors import PermissionDenied
from .models import ApplicationInfo, PowerEvent

logger = logging.getLogger(__name__)

FocusCallback = Callable[[ApplicationInfo], None]
PowerCallback = Callable[[PowerEvent, datetime], None]


class FocusObserver(ABC):
    @abstractmethod
    def start(self, on_change: FocusCallback) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def current_application(self) -> Optional[ApplicationInfo]: ...

    @abstractmethod
    def has_permission(self) -> bool: ...


class IdleObserver(ABC):
    @abstractmethod
    def start(self, on_event: PowerCallback) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...


class ActiveWindowProbe(Protocol):
    def is_available(self) -> bool: ...

    def get_active_window(
        self,
    ) -> tuple[Optional[str], Optional[str], Optional[int], Optional[str]]:
        """Return ``(process_name, identifier, pid, window_title)``."""
        ...


class IdleDetector(Protocol):
    def milliseconds_since_input(self) -> int: ...

    def is_screen_locked(self) -> bool: ...


class WindowsIdleDetector:
    """Detects idle state and a locked workstation using Win32 APIs."""

    DESKTOP_SWITCHDESKTOP = 0x0100

    class LASTINPUTINFO(ctypes.Structure):
        _fields_ = [("cbSize", wintypes.UINT), ("dwTime", wintypes.DWORD)]

    def __init__(self) -> None:
        windll = getattr(ctypes, "windll", None)
        self._user32 = windll.user32 if windll is not None else None
        self._kernel32 = windll.kernel32 if windll is not None else None

    def milliseconds_since_input(self) -> int:
        if self._user32 is None:
            raise PermissionDenied("Idle detection requires Windows")
        last_input = self.LASTINPUTINFO()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()  # type: ignore[attr-defined]
        elapsed = self._kernel32.GetTickCount64() - last_input.dwTime
        return int(elapsed)

    def is_screen_locked(self) -> bool:
        if self._user32 is None:
            raise PermissionDenied("Lock detection requires Windows")
        # The input desktop cannot be opened while the lock screen owns it.
        desktop = self._user32.OpenInputDesktop(0, False, self.DESKTOP_SWITCHDESKTOP)
        if not desktop:
            return True
        self._user32.CloseDesktop(desktop)
        return False


class WindowsActiveWindowProbe:
    """Retrieves the foreground process and window title."""

    def __init__(self) -> None:
        windll = getattr(ctypes, "windll", None)
        self._user32 = windll.user32 if windll is not None else None

    def is_available(self) -> bool:
        return sys.platform == "win32" and self._user32 is not None

    def get_active_window(
        self,
    ) -> tuple[Optional[str], Optional[str], Optional[int], Optional[str]]:
        if self._user32 is None:
            raise PermissionDenied("Foreground window detection requires Windows")
        hwnd = self._user32.GetForegroundWindow()
        if not hwnd:
            return None, None, None, None

        length = self._user32.GetWindowTextLengthW(hwnd)
        buffer = ctypes.create_unicode_buffer(length + 1)
        self._user32.GetWindowTextW(hwnd, buffer, length + 1)
        window_title = buffer.value.strip() or None

        pid = wintypes.DWORD()
        self._user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        if not pid.value:
            return None, None, None, window_title
        try:
            process = psutil.Process(pid.value)
            process_name = process.name()
            try:
                identifier = process.exe()
            except psutil.AccessDenied:
                identifier = process_name
        except (psutil.Error, ProcessLookupError):
            return None, None, pid.value, window_title
        return process_name, identifier, pid.value, window_title


class _PollingThread:
    """Runs ``poll_once`` on a daemon thread until stopped."""

    thread_name = "observer"

    def __init__(self, interval: float, clock: Callable[[], datetime]) -> None:
        self.interval = interval
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def _start_thread(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run, args=(stop_event,), name=self.thread_name, daemon=True
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()

    def _stop_thread(self) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if self._stop_event:
                self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 5)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.poll_once()
            except PermissionDenied:
                logger.error("%s lost permission; stopping.", self.thread_name)
                return
            except Exception:
                logger.exception("%s poll failed.", self.thread_name)
            # Sleep in an interruptible manner.
            stop_event.wait(self.interval)

    def poll_once(self) -> None:
        raise NotImplementedError


class PollingFocusObserver(_PollingThread, FocusObserver):
    """Reports a focus change whenever the foreground application identity changes."""

    thread_name = "focus-observer"

    def __init__(
        self,
        probe: ActiveWindowProbe,
        interval: float = 1.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(interval, clock)
        self._probe = probe
        self._on_change: Optional[FocusCallback] = None
        self._last_identifier: Optional[str] = None

    def has_permission(self) -> bool:
        return self._probe.is_available()

    def current_application(self) -> Optional[ApplicationInfo]:
        if not self.has_permission():
            return None
        process_name, identifier, pid, title = self._probe.get_active_window()
        if not process_name:
            return None
        return ApplicationInfo(
            name=process_name,
            identifier=identifier or process_name,
            timestamp=self._clock(),
            pid=pid,
            window_title=title,
        )

    def start(self, on_change: FocusCallback) -> None:
        if not self.has_permission():
            raise PermissionDenied("Foreground application cannot be observed")
        self._on_change = on_change
        current = self.current_application()
        self._last_identifier = current.identifier if current else None
        self._start_thread()
        logger.debug("Focus observer started.")

    def stop(self) -> None:
        self._stop_thread()
        self._on_change = None
        self._last_identifier = None
        logger.debug("Focus observer stopped.")

    def poll_once(self) -> None:
        info = self.current_application()
        if info is None or info.identifier == self._last_identifier:
            return
        self._last_identifier = info.identifier
        callback = self._on_change
        if callback is not None:
            callback(info)


class PollingIdleObserver(_PollingThread, IdleObserver):
    """Derives idle, lock and sleep transitions from periodic samples.

    A wall-clock gap between two samples larger than ``sleep_gap`` means
    the machine was suspended; it is reported as ``SLEEP_STARTED`` at the
    last sample followed by ``WAKE`` at the current one.
    """

    thread_name = "idle-observer"

    def __init__(
        self,
        detector: IdleDetector,
        idle_threshold: float,
        sleep_gap: float,
        interval: float = 5.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(interval, clock)
        self._detector = detector
        self.idle_threshold_ms = int(idle_threshold * 1000)
        self.sleep_gap = sleep_gap
        self._on_event: Optional[PowerCallback] = None
        self._last_poll: Optional[datetime] = None
        self._idle = False
        self._locked = False
        self._detector_unavailable = False

    def start(self, on_event: PowerCallback) -> None:
        self._on_event = on_event
        self._last_poll = None
        self._idle = False
        self._locked = False
        self._start_thread()
        logger.debug("Idle observer started.")

    def stop(self) -> None:
        self._stop_thread()
        self._on_event = None
        logger.debug("Idle observer stopped.")

    def _emit(self, event: PowerEvent, timestamp: datetime) -> None:
        logger.debug("Power event %s at %s", event.value, timestamp)
        callback = self._on_event
        if callback is not None:
            callback(event, timestamp)

    def poll_once(self) -> None:
        now = self._clock()
        last_poll, self._last_poll = self._last_poll, now
        if last_poll is not None and (now - last_poll).total_seconds() > self.sleep_gap:
            self._emit(PowerEvent.SLEEP_STARTED, last_poll)
            self._emit(PowerEvent.WAKE, now)
            self._idle = False
            self._locked = False
            return

        try:
            self._poll_detector(now)
        except PermissionDenied as exc:
            # Sleep detection above needs no detector, so keep polling.
            if not self._detector_unavailable:
                logger.info("Idle detection unavailable: %s", exc)
            self._detector_unavailable = True

    def _poll_detector(self, now: datetime) -> None:
        locked = self._detector.is_screen_locked()
        if locked != self._locked:
            self._locked = locked
            self._emit(
                PowerEvent.SCREEN_LOCKED if locked else PowerEvent.SCREEN_UNLOCKED, now
            )
        if locked:
            return

        idle = self._detector.milliseconds_since_input() >= self.idle_threshold_ms
        if idle != self._idle:
            self._idle = idle
            self._emit(PowerEvent.IDLE_STARTED if idle else PowerEvent.IDLE_ENDED, now)


def create_default_observers(
    settings: TrackerSettings,
) -> tuple[FocusObserver, IdleObserver]:
    """Build the Windows observers; elsewhere the focus observer lacks permission."""
    focus = PollingFocusObserver(
        WindowsActiveWindowProbe(), interval=min(settings.sample_interval.total_seconds(), 1.0)
    )
    idle = PollingIdleObserver(
        WindowsIdleDetector(),
        idle_threshold=settings.idle_threshold.total_seconds(),
        sleep_gap=settings.sleep_gap.total_seconds(),
        interval=settings.sample_interval.total_seconds(),
    )
    return focus, idle
