"""Timer and worker primitives used by the recognition scheduler."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Protocol

LOGGER = logging.getLogger("coverscan.recognition.timers")


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class TimerFactory(Protocol):
    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class Executor(Protocol):
    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        ...


class _PeriodicTimer:
    """Daemon thread firing ``callback`` every ``interval`` seconds until cancelled."""

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name="coverscan-sampler", daemon=True)

    def start(self) -> "_PeriodicTimer":
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.callback()
            except Exception:
                LOGGER.exception("Periodic timer callback failed")

    def cancel(self) -> None:
        self._stopped.set()


class ThreadingTimers:
    """Wall-clock timers backed by ``threading``; time is ``time.monotonic``."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        return _PeriodicTimer(interval, callback).start()


def default_executor() -> ThreadPoolExecutor:
    # Two workers: an escalation must not queue behind an in-flight sample.
    return ThreadPoolExecutor(max_workers=2, thread_name_prefix="coverscan-recognition")
