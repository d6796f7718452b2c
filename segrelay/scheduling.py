"""Cancellable delayed callbacks for the recorder's rotation timer."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Protocol


class ScheduledHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledHandle: ...

    def monotonic(self) -> float: ...


class ThreadingScheduler:
    """Run each callback on its own daemon timer thread."""

    def __init__(self, *, name: str = "rotation-timer") -> None:
        self._name = name

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(0.0, float(delay)), callback)
        timer.name = self._name
        timer.daemon = True
        timer.start()
        return timer

    def monotonic(self) -> float:
        return time.monotonic()
