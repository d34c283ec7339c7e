"""Serialized execution context and timers for the coordinator."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_STOP = object()


class SerialDispatcher:
    """Runs submitted callables one at a time, in arrival order, on one thread."""

    def __init__(self, name: str = "tracking-coordinator") -> None:
        self.name = name
        self._queue: queue.Queue[Any] = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def in_worker(self) -> bool:
        return threading.current_thread() is self._thread

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        """Drain queued work, then stop the worker."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(_STOP)
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        with self._lock:
            self._thread = None

    def submit(self, fn: Callable[..., Any], *args: Any) -> Optional[Future]:
        """Queue ``fn(*args)`` without waiting; failures are logged."""
        if not self.is_running:
            logger.debug("Dispatcher %s not running; dropping %s", self.name, fn)
            return None
        future: Future = Future()
        self._queue.put((future, fn, args, True))
        return future

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run ``fn(*args)`` on the worker and return its result."""
        if self.in_worker():
            return fn(*args)
        if not self.is_running:
            raise RuntimeError(f"Dispatcher {self.name} is not running")
        future: Future = Future()
        self._queue.put((future, fn, args, False))
        return future.result()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            future, fn, args, detached = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args)
            except BaseException as exc:
                if detached:
                    logger.exception("Queued task %s failed.", getattr(fn, "__name__", fn))
                future.set_exception(exc)
            else:
                future.set_result(result)


class TimerHandle:
    """Cancellable handle for a scheduled callback."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._cancelled = threading.Event()
        self._timer: Optional[threading.Timer] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        if self._timer is not None:
            self._timer.cancel()


class ThreadingScheduler:
    """Schedules callbacks on background threads.

    Callbacks run on the timer thread; callers that own state must hop onto
    their own execution context inside the callback.
    """

    def call_later(
        self, delay: float, callback: Callable[[], None], name: str = "timer"
    ) -> TimerHandle:
        handle = TimerHandle(name)

        def fire() -> None:
            if not handle.cancelled:
                callback()

        timer = threading.Timer(max(delay, 0.0), fire)
        timer.name = name
        timer.daemon = True
        handle._timer = timer
        timer.start()
        return handle

    def call_every(
        self, interval: float, callback: Callable[[], None], name: str = "timer"
    ) -> TimerHandle:
        handle = TimerHandle(name)

        def loop() -> None:
            while not handle._cancelled.wait(interval):
                try:
                    callback()
                except Exception:
                    logger.exception("Recurring timer %s failed.", name)

        threading.Thread(target=loop, name=name, daemon=True).start()
        return handle
