from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from segrelay.capture_source import CaptureSource


class _ManualHandle:
    def __init__(self, when: float, seq: int, callback) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic stand-in for the rotation timer.

    ``advance`` fires due callbacks in deadline order; callbacks may arm new
    timers, which also fire if they fall inside the advanced window.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = 0
        self._handles: list[_ManualHandle] = []

    def monotonic(self) -> float:
        return self.now

    def call_later(self, delay, callback):
        self._seq += 1
        handle = _ManualHandle(self.now + delay, self._seq, callback)
        self._handles.append(handle)
        return handle

    def pending(self) -> int:
        return sum(1 for handle in self._handles if not handle.cancelled)

    def live_handles(self) -> list[_ManualHandle]:
        return [handle for handle in self._handles if not handle.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when <= target + 1e-9]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._handles.remove(handle)
            self.now = max(self.now, handle.when)
            handle.callback()
        self.now = target
        self._handles = [h for h in self._handles if not h.cancelled]


class FakeWallClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def tick(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ScriptedSource(CaptureSource):
    """Capture source driven by the test instead of a subprocess."""

    def __init__(self, *, has_video: bool = False, start_error: Exception | None = None) -> None:
        self.has_video = has_video
        self.start_error = start_error
        self.started = False
        self.stopped = False
        self.paused = False
        self._on_data = None
        self._on_end = None

    def start(self, on_data, on_end) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True
        self._on_data = on_data
        self._on_end = on_end

    def feed(self, data: bytes) -> None:
        assert self._on_data is not None, "source not started"
        self._on_data(data)

    def fail(self, error: BaseException) -> None:
        assert self._on_end is not None, "source not started"
        self._on_end(error)

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def stop(self) -> None:
        self.stopped = True
        if self._on_end is not None:
            self._on_end(None)


class CollectingQueue:
    def __init__(self) -> None:
        self.items = []

    def enqueue(self, descriptor) -> None:
        self.items.append(descriptor)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def collecting_queue() -> CollectingQueue:
    return CollectingQueue()


TEST_KEY = bytes(range(32))
