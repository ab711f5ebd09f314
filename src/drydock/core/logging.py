# Copyright 2026. Activity logging and cancellable periodic tasks.

import threading
from datetime import datetime, timezone
from typing import Callable


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%H:%M:%S")


def log_activity(log_path: str, source: str, message: str) -> None:
    """Append one line to the activity log. Never raises."""
    if not log_path:
        return
    ts = utc_timestamp()
    line = f"[{ts}] {source}  {message}\n" if source else f"[{ts}] {message}\n"
    try:
        with open(log_path, "a") as f:
            f.write(line)
    except OSError:
        pass


class PeriodicTask:
    """Runs `fn()` every `interval` seconds on a daemon thread until stopped.

    `stop()` cancels the wait immediately; a call already in progress is
    allowed to finish. Failures in `fn` are written to the activity log and
    do not end the schedule.
    """

    def __init__(self, fn: Callable[[], object], interval: float,
                 name: str = "periodic", activity_log: str = "",
                 run_immediately: bool = False):
        self._fn = fn
        self._interval = interval
        self._name = name
        self._activity_log = activity_log
        self._run_immediately = run_immediately
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stop_event = threading.Event()
        stop = self._stop_event

        def _loop():
            if self._run_immediately:
                self._tick()
            while not stop.wait(self._interval):
                self._tick()

        self._thread = threading.Thread(target=_loop, name=self._name, daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: float = 5.0) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._stop_event = None
        self._thread = None

    def run_now(self) -> None:
        self._tick()

    def _tick(self) -> None:
        try:
            self._fn()
        except Exception as e:
            log_activity(self._activity_log, self._name, f"periodic task failed: {e}")

    def __enter__(self) -> "PeriodicTask":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()
