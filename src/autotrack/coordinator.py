"""Tracking coordinator: owns the tracking state machine and the open entry.

All state changes happen on a single :class:`SerialDispatcher` worker.
Observer callbacks and timer callbacks are queued onto it with ``submit``;
the public commands use ``call`` and therefore return only after the
transition (including any finalize) has been applied.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from .config import TrackerSettings
from .dispatch import SerialDispatcher, ThreadingScheduler, TimerHandle
from .errors import ConflictError, NotFoundError, PermissionDenied, PersistenceError
from .models import (
    ApplicationAttribution,
    ApplicationInfo,
    Attribution,
    EntrySource,
    LabelAttribution,
    PauseReason,
    PowerEvent,
    TodoAttribution,
    TrackingState,
    TrackingStatus,
)
from .observers import FocusObserver, IdleObserver
from .store import TimeEntryStore

logger = logging.getLogger(__name__)

StatusListener = Callable[[TrackingStatus], None]

MANUAL_TIMER_LABEL = "Manual Timer"

_PAUSE_EVENTS = {
    PowerEvent.IDLE_STARTED: PauseReason.SYSTEM_IDLE,
    PowerEvent.SLEEP_STARTED: PauseReason.SYSTEM_SLEEP,
    PowerEvent.SCREEN_LOCKED: PauseReason.SCREEN_LOCKED,
}
_RESUME_EVENTS = {PowerEvent.IDLE_ENDED, PowerEvent.WAKE, PowerEvent.SCREEN_UNLOCKED}


def next_midnight(now: datetime) -> datetime:
    """Return the first local midnight strictly after ``now``."""
    return datetime.combine(now.date() + timedelta(days=1), time.min)


class TrackingCoordinator:
    """Decides when time entries are opened and closed."""

    def __init__(
        self,
        store: TimeEntryStore,
        focus_observer: FocusObserver,
        idle_observer: IdleObserver,
        settings: Optional[TrackerSettings] = None,
        *,
        dispatcher: Optional[SerialDispatcher] = None,
        scheduler: Optional[ThreadingScheduler] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings or TrackerSettings()
        self._store = store
        self._focus = focus_observer
        self._idle = idle_observer
        self._dispatcher = dispatcher or SerialDispatcher()
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock

        self._state = TrackingState.IDLE
        self._pause_reason: Optional[PauseReason] = None
        self._automatic_active = False
        # start_tracking was asked for but is waiting on permission.
        self._automatic_requested = False
        self._manual_attribution: Optional[Attribution] = None

        self._current_entry_id: Optional[str] = None
        self._attribution: Optional[Attribution] = None
        self._source: Optional[EntrySource] = None
        self._tracking_start: Optional[datetime] = None
        self._last_switch_time: Optional[datetime] = None
        self._pending_app: Optional[ApplicationInfo] = None

        self._timers: dict[str, tuple[TimerHandle, object]] = {}
        self._listeners: list[StatusListener] = []

        self._dispatcher.start()

    # Observable state

    @property
    def status(self) -> TrackingStatus:
        state = self._state
        start = self._tracking_start
        attribution = self._attribution
        tracking = state is TrackingState.TRACKING
        elapsed = 0
        if tracking and start is not None:
            elapsed = max(int((self._clock() - start).total_seconds()), 0)
        return TrackingStatus(
            state=state,
            pause_reason=self._pause_reason,
            label=attribution.display_label if tracking and attribution else None,
            elapsed_seconds=elapsed,
            manual_timer_active=self._manual_attribution is not None,
        )

    @property
    def pending_application(self) -> Optional[ApplicationInfo]:
        return self._pending_app

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Commands

    def start_tracking(self) -> TrackingState:
        return self._dispatcher.call(self._start_tracking)

    def stop_tracking(self) -> TrackingState:
        return self._dispatcher.call(self._stop_tracking)

    def start_manual_timer(
        self, label: Optional[str] = None, todo_id: Optional[str] = None
    ) -> TrackingState:
        return self._dispatcher.call(self._start_manual_timer, label, todo_id)

    def stop_manual_timer(self) -> TrackingState:
        return self._dispatcher.call(self._stop_manual_timer)

    def pause(self, reason: PauseReason = PauseReason.USER_REQUESTED) -> TrackingState:
        return self._dispatcher.call(lambda: self._pause(reason, self._clock()))

    def resume(self) -> TrackingState:
        return self._dispatcher.call(lambda: self._resume(self._clock()))

    def permission_granted(self) -> TrackingState:
        return self._dispatcher.call(self._permission_granted)

    def recover_from_crash(self) -> int:
        """Close entries left open by an unclean shutdown; returns the count."""
        return self._dispatcher.call(self._recover)

    def shutdown(self) -> None:
        if self._dispatcher.is_running or self._dispatcher.in_worker():
            self._dispatcher.call(self._stop_tracking)
        self._dispatcher.stop()

    # Observer delivery

    def _deliver_focus_change(self, info: ApplicationInfo) -> None:
        self._dispatcher.submit(self._handle_focus_change, info)

    def _deliver_power_event(self, event: PowerEvent, timestamp: datetime) -> None:
        self._dispatcher.submit(self._handle_power_event, event, timestamp)

    # Transitions (dispatcher thread only)

    def _start_tracking(self) -> TrackingState:
        if self._automatic_active:
            return self._state
        if not self._focus.has_permission():
            logger.warning("Foreground application access not granted; waiting.")
            self._automatic_requested = True
            if self._manual_attribution is None:
                self._set_state(TrackingState.PERMISSION_REQUIRED)
            return self._state
        self._begin_tracking()
        return self._state

    def _begin_tracking(self) -> None:
        manual = self._manual_attribution is not None
        try:
            self._idle.start(self._deliver_power_event)
            if not manual:
                self._focus.start(self._deliver_focus_change)
        except PermissionDenied as exc:
            logger.warning("Cannot observe the environment: %s", exc)
            self._automatic_requested = True
            self._focus.stop()
            self._idle.stop()
            if not manual:
                self._set_state(TrackingState.PERMISSION_REQUIRED)
            return

        self._automatic_active = True
        self._automatic_requested = False
        logger.info("Automatic tracking started.")
        if manual:
            # The manual timer keeps the clock; focus stays suspended until it stops.
            return
        self._arm_timers()
        self._set_state(TrackingState.TRACKING, notify=False)
        self._open_for_current_application(self._clock())
        self._notify()

    def _stop_tracking(self) -> TrackingState:
        if self._state is TrackingState.IDLE:
            return self._state
        self._finalize_current(self._clock())
        self._cancel_timers()
        self._focus.stop()
        self._idle.stop()
        self._automatic_active = False
        self._automatic_requested = False
        self._manual_attribution = None
        self._reset_attribution()
        self._last_switch_time = None
        self._set_state(TrackingState.IDLE)
        logger.info("Tracking stopped.")
        return self._state

    def _permission_granted(self) -> TrackingState:
        if self._state is TrackingState.PERMISSION_REQUIRED:
            self._state = TrackingState.IDLE
            return self._start_tracking()
        if self._automatic_requested and not self._automatic_active:
            # A manual timer holds the clock; focus observation starts when it stops.
            return self._start_tracking()
        return self._state

    def _handle_focus_change(self, info: ApplicationInfo) -> None:
        if self._state is not TrackingState.TRACKING or self._manual_attribution is not None:
            logger.debug("Ignoring focus change to %s in state %s", info.name, self._state.value)
            return

        current = self._attribution
        if (
            isinstance(current, ApplicationAttribution)
            and current.identifier == info.identifier
        ):
            self._pending_app = None
            return

        timestamp = info.timestamp
        minimum = self.settings.minimum_switch_duration
        if self._last_switch_time is not None and timestamp - self._last_switch_time < minimum:
            logger.debug("Switch to %s held as pending", info.name)
            self._pending_app = info
            return

        self._finalize_current(timestamp)
        self._open_entry(
            ApplicationAttribution.from_info(info), EntrySource.AUTO_DETECTED, timestamp
        )
        self._last_switch_time = timestamp
        self._pending_app = None
        self._notify()

    def _handle_power_event(self, event: PowerEvent, timestamp: datetime) -> None:
        reason = _PAUSE_EVENTS.get(event)
        if reason is not None:
            self._pause(reason, timestamp)
        elif event in _RESUME_EVENTS:
            self._resume(timestamp)

    def _pause(self, reason: PauseReason, timestamp: datetime) -> TrackingState:
        if self._state is not TrackingState.TRACKING:
            return self._state
        self._finalize_current(timestamp)
        self._focus.stop()
        self._cancel_timers()
        self._reset_attribution()
        self._pause_reason = reason
        self._set_state(TrackingState.PAUSED)
        logger.info("Tracking paused (%s).", reason.value)
        return self._state

    def _resume(self, timestamp: datetime) -> TrackingState:
        if self._state is not TrackingState.PAUSED:
            return self._state
        self._pause_reason = None
        self._set_state(TrackingState.TRACKING, notify=False)
        self._arm_timers()
        if self._manual_attribution is not None:
            self._open_entry(self._manual_attribution, EntrySource.MANUAL, timestamp)
        elif self._automatic_active:
            try:
                self._focus.start(self._deliver_focus_change)
            except PermissionDenied as exc:
                logger.warning("Cannot resume focus observation: %s", exc)
            self._open_for_current_application(timestamp)
        logger.info("Tracking resumed.")
        self._notify()
        return self._state

    def _start_manual_timer(
        self, label: Optional[str], todo_id: Optional[str]
    ) -> TrackingState:
        now = self._clock()
        self._finalize_current(now)
        if todo_id is not None:
            attribution: Attribution = TodoAttribution(todo_id=todo_id, label=label)
        else:
            attribution = LabelAttribution(label=label or MANUAL_TIMER_LABEL)

        if self._automatic_active:
            self._focus.stop()
            logger.info(
                "Automatic tracking suspended (%s).",
                PauseReason.MANUAL_TIMER_TAKEOVER.value,
            )
        elif self._manual_attribution is None:
            # Sleep and lock still pause a timer started without automatic tracking.
            self._idle.start(self._deliver_power_event)
        self._manual_attribution = attribution
        self._pending_app = None
        if self._state is not TrackingState.TRACKING:
            self._pause_reason = None
            self._set_state(TrackingState.TRACKING, notify=False)
            self._arm_timers()
        self._open_entry(attribution, EntrySource.MANUAL, now)
        self._notify()
        return self._state

    def _stop_manual_timer(self) -> TrackingState:
        if self._manual_attribution is None:
            return self._state
        now = self._clock()
        self._finalize_current(now)
        self._manual_attribution = None
        self._reset_attribution()

        if self._state is TrackingState.PAUSED and self._automatic_active:
            self._notify()
            return self._state
        if self._automatic_active:
            try:
                self._focus.start(self._deliver_focus_change)
            except PermissionDenied as exc:
                logger.warning("Cannot resume focus observation: %s", exc)
            self._open_for_current_application(now)
            self._notify()
        else:
            self._cancel_timers()
            self._idle.stop()
            self._set_state(
                TrackingState.PERMISSION_REQUIRED
                if self._automatic_requested
                else TrackingState.IDLE
            )
        return self._state

    def _recover(self) -> int:
        now = self._clock()
        try:
            entry_ids = self._store.list_in_progress()
        except PersistenceError:
            logger.exception("Crash recovery could not list in-progress entries.")
            return 0

        recovered = 0
        for entry_id in entry_ids:
            if entry_id == self._current_entry_id:
                continue
            try:
                try:
                    self._store.finalize(entry_id, now)
                except ValueError:
                    # Started after "now" (clock moved backwards); close it empty.
                    self._store.finalize(entry_id, self._store.get(entry_id).start_time)
            except NotFoundError:
                logger.info("Entry %s vanished during recovery.", entry_id)
                continue
            except PersistenceError:
                logger.exception("Failed to recover entry %s.", entry_id)
                continue
            recovered += 1
        if recovered:
            logger.warning("Recovered %d in-progress entries from crash.", recovered)
        return recovered

    # Entry helpers

    def _open_for_current_application(self, timestamp: datetime) -> None:
        self._pending_app = None
        info = self._focus.current_application()
        if info is None:
            logger.info("No foreground application; waiting for a focus change.")
            self._reset_attribution()
            self._last_switch_time = None
            return
        self._open_entry(
            ApplicationAttribution.from_info(info), EntrySource.AUTO_DETECTED, timestamp
        )
        self._last_switch_time = timestamp

    def _open_entry(
        self, attribution: Attribution, source: EntrySource, start: datetime
    ) -> None:
        self._attribution = attribution
        self._source = source
        self._tracking_start = start
        self._current_entry_id = None
        try:
            self._current_entry_id = self._store.create(attribution, source, start)
        except ConflictError as exc:
            logger.error("Store reports entries still open (%s); recovering.", exc)
            self._recover()
            try:
                self._current_entry_id = self._store.create(attribution, source, start)
            except (ConflictError, PersistenceError):
                logger.exception("Failed to create entry for %s.", attribution.display_label)
        except PersistenceError:
            logger.exception("Failed to create entry for %s.", attribution.display_label)

    def _finalize_current(self, end: datetime) -> None:
        entry_id, self._current_entry_id = self._current_entry_id, None
        if entry_id is None:
            return
        if self._tracking_start is not None and end < self._tracking_start:
            end = self._tracking_start
        try:
            self._store.finalize(entry_id, end)
        except NotFoundError:
            logger.info("Entry %s no longer exists; nothing to finalize.", entry_id)
        except PersistenceError:
            logger.exception("Failed to finalize entry %s.", entry_id)

    def _reset_attribution(self) -> None:
        self._attribution = None
        self._source = None
        self._tracking_start = None
        self._pending_app = None

    def _set_state(self, state: TrackingState, *, notify: bool = True) -> None:
        self._state = state
        if state is not TrackingState.PAUSED:
            self._pause_reason = None
        if notify:
            self._notify()

    def _notify(self) -> None:
        status = self.status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed.")

    # Timers

    def _arm_timers(self) -> None:
        self._cancel_timers()
        self._schedule(
            "checkpoint",
            lambda fire: self._scheduler.call_every(
                self.settings.checkpoint_interval.total_seconds(), fire, name="checkpoint"
            ),
            self._on_checkpoint,
        )
        self._schedule(
            "elapsed",
            lambda fire: self._scheduler.call_every(
                self.settings.elapsed_tick_interval.total_seconds(), fire, name="elapsed"
            ),
            self._notify,
        )
        self._schedule_midnight(next_midnight(self._clock()))

    def _schedule_midnight(self, midnight: datetime) -> None:
        delay = (midnight - self._clock()).total_seconds()
        self._schedule(
            "midnight",
            lambda fire: self._scheduler.call_later(delay, fire, name="midnight"),
            lambda: self._on_midnight(midnight),
        )

    def _schedule(
        self,
        name: str,
        start: Callable[[Callable[[], None]], TimerHandle],
        action: Callable[[], None],
    ) -> None:
        previous = self._timers.pop(name, None)
        if previous is not None:
            previous[0].cancel()
        token = object()

        def fire() -> None:
            self._dispatcher.submit(self._run_timer, name, token, action)

        self._timers[name] = (start(fire), token)

    def _run_timer(self, name: str, token: object, action: Callable[[], None]) -> None:
        current = self._timers.get(name)
        if current is None or current[1] is not token:
            logger.debug("Dropping stale %s timer callback.", name)
            return
        action()

    def _cancel_timers(self) -> None:
        for handle, _token in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _on_checkpoint(self) -> None:
        entry_id = self._current_entry_id
        if entry_id is None:
            return
        try:
            self._store.checkpoint(entry_id, self._clock())
        except NotFoundError:
            logger.info("Entry %s no longer exists; skipping checkpoint.", entry_id)
        except PersistenceError:
            logger.exception("Checkpoint of entry %s failed.", entry_id)

    def _on_midnight(self, midnight: datetime) -> None:
        attribution, source, start = self._attribution, self._source, self._tracking_start
        if (
            self._state is TrackingState.TRACKING
            and attribution is not None
            and source is not None
            and start is not None
            and start < midnight
        ):
            self._finalize_current(midnight)
            self._open_entry(attribution, source, midnight)
            logger.info("Split %s at midnight %s.", attribution.display_label, midnight)
            self._notify()
        self._schedule_midnight(max(next_midnight(self._clock()), midnight + timedelta(days=1)))
