"""Ordered, network-gated upload queue for recorded segments.

A single drain task runs on the manager's own event loop thread.  It
delivers the head of the queue, removes it only after a confirmed success,
and halts on the first failure so a stuck head blocks every later segment
instead of delivering them out of order.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from segrelay.delivery import DeliveryFailure, SegmentUploader
from segrelay.network_monitor import NetworkQuality, NetworkQualityMonitor
from segrelay.segment_store import SegmentStore
from segrelay.segments import SegmentDescriptor
from segrelay.session_events import (
    SEGMENT_DEAD_LETTERED,
    SEGMENT_DROPPED,
    SEGMENT_UPLOADED,
    UPLOAD_FAILED,
    SessionEventBus,
)

log = logging.getLogger("segrelay.upload_queue")


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """Delay before retrying a head that has failed ``attempts`` times."""

    if base <= 0 or attempts <= 0:
        return 0.0
    return min(cap, base * (2 ** (attempts - 1)))


class UploadQueueManager:
    """FIFO of segment descriptors drained by one delivery worker."""

    def __init__(
        self,
        store: SegmentStore,
        uploader: SegmentUploader,
        monitor: NetworkQualityMonitor | None = None,
        *,
        is_authorized: Callable[[], bool] | None = None,
        pacing_delay: float = 0.5,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 300.0,
        max_attempts: int | None = None,
        events: SessionEventBus | None = None,
    ) -> None:
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._uploader = uploader
        self._monitor = monitor
        self._is_authorized = is_authorized
        self._pacing_delay = max(0.0, float(pacing_delay))
        self._retry_base_delay = max(0.0, float(retry_base_delay))
        self._retry_max_delay = max(self._retry_base_delay, float(retry_max_delay))
        self._max_attempts = max_attempts
        self._events = events

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._queue: deque[SegmentDescriptor] = deque()
        self._dead_letters: list[SegmentDescriptor] = []
        self._stats = {"delivered": 0, "failed_attempts": 0, "dropped": 0, "dead_lettered": 0}
        self._pending_kicks = 0
        self._draining = False
        self._closed = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._retry_handle: asyncio.TimerHandle | None = None

    # --- lifecycle ---
    def start(self) -> None:
        """Launch the drain worker on a dedicated thread with its own event loop."""
        with self._cond:
            if self._closed:
                raise RuntimeError("upload queue has been shut down")
            if self._loop is not None:
                return
            loop = asyncio.new_event_loop()
            self._loop = loop
        ready = threading.Event()

        def _run() -> None:
            asyncio.set_event_loop(loop)
            loop.call_soon(ready.set)
            try:
                loop.run_forever()
            finally:
                loop.run_until_complete(loop.shutdown_default_executor())
                loop.close()

        thread = threading.Thread(target=_run, name="upload-queue", daemon=True)
        self._thread = thread
        thread.start()
        ready.wait()

        if self._monitor is not None:
            self._monitor.add_listener(self._on_eligibility_changed)
        log.info("upload queue started")
        self._request_drain("start")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the worker; undelivered descriptors stay in :meth:`pending`."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            loop = self._loop
            thread = self._thread
            remaining = len(self._queue)
            self._cond.notify_all()

        if self._monitor is not None:
            self._monitor.remove_listener(self._on_eligibility_changed)
        if loop is None:
            return

        future = asyncio.run_coroutine_threadsafe(self._close_async(), loop)
        try:
            future.result(timeout)
        except Exception as exc:
            log.warning("upload queue did not close cleanly: %r", exc)
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout)
        if remaining:
            log.warning("upload queue shut down with %d undelivered segment(s)", remaining)
        else:
            log.info("upload queue shut down")

    async def _close_async(self) -> None:
        self._cancel_retry()
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        try:
            await self._uploader.close()
        except Exception:
            log.exception("uploader failed to close")

    # --- producer side ---
    def enqueue(self, descriptor: SegmentDescriptor) -> None:
        with self._cond:
            self._queue.append(descriptor)
            size = len(self._queue)
            closed = self._closed
            self._cond.notify_all()
        if closed:
            log.warning("enqueued %s after shutdown; it will not be delivered", descriptor.filename)
            return
        log.debug("queued %s (%d pending)", descriptor.filename, size)
        self._request_drain("enqueue")

    def notify_authorization_changed(self) -> None:
        self._request_drain("authorization changed")

    def _on_eligibility_changed(self, eligible: bool, quality: NetworkQuality) -> None:
        if eligible:
            self._request_drain(f"network {quality.name.lower()}")

    # --- drain worker ---
    def _request_drain(self, reason: str) -> None:
        with self._cond:
            loop = self._loop
            if loop is None or self._closed or not self._queue:
                return
            self._pending_kicks += 1
        try:
            loop.call_soon_threadsafe(self._kick, reason)
        except RuntimeError:
            # loop already closed
            with self._cond:
                self._pending_kicks -= 1
                self._cond.notify_all()

    def _kick(self, reason: str) -> None:
        loop = self._loop
        with self._cond:
            self._pending_kicks = max(0, self._pending_kicks - 1)
            busy = self._drain_task is not None and not self._drain_task.done()
            if loop is None or self._closed or busy:
                self._cond.notify_all()
                return
            self._draining = True
        self._cancel_retry()
        self._drain_task = loop.create_task(self._drain(reason))

    def _halt_reason(self) -> str | None:
        if self._monitor is not None and not self._monitor.is_upload_eligible():
            return f"network {self._monitor.current_quality().name.lower()}"
        if self._is_authorized is not None and not self._is_authorized():
            return "not authorized"
        return None

    async def _drain(self, reason: str) -> None:
        loop = asyncio.get_running_loop()
        log.debug("drain started (%s)", reason)
        try:
            while True:
                with self._cond:
                    if self._closed or not self._queue:
                        return
                    head = self._queue[0]
                    pending = len(self._queue)

                halt = self._halt_reason()
                if halt is not None:
                    log.info("upload drain halted: %s (%d pending)", halt, pending)
                    return

                try:
                    payload = await loop.run_in_executor(None, self._store.get, head.id)
                except OSError as exc:
                    log.error("cannot read %s from store: %s", head.filename, exc)
                    self._arm_retry(max(1, head.attempts))
                    return
                if payload is None:
                    self._drop_head(head)
                    continue

                try:
                    await self._uploader.deliver(head, payload)
                except DeliveryFailure as exc:
                    if self._record_failure(head, exc):
                        continue
                    return
                except Exception as exc:
                    log.exception("unexpected error delivering %s", head.filename)
                    if self._record_failure(head, exc):
                        continue
                    return

                await loop.run_in_executor(None, self._store.delete, head.id)
                more = self._complete_head(head)
                if more and self._pacing_delay > 0:
                    await asyncio.sleep(self._pacing_delay)
        finally:
            with self._cond:
                self._draining = False
                self._cond.notify_all()

    def _pop_head_locked(self, head: SegmentDescriptor) -> None:
        if self._queue and self._queue[0] is head:
            self._queue.popleft()
        else:
            with contextlib.suppress(ValueError):
                self._queue.remove(head)

    def _drop_head(self, head: SegmentDescriptor) -> None:
        with self._cond:
            self._pop_head_locked(head)
            self._stats["dropped"] += 1
            self._cond.notify_all()
        log.warning("dropping %s: payload missing from store (data loss)", head.filename)
        self._publish(SEGMENT_DROPPED, {"id": head.id, "filename": head.filename, "reason": "payload_missing"})

    def _complete_head(self, head: SegmentDescriptor) -> bool:
        with self._cond:
            self._pop_head_locked(head)
            self._stats["delivered"] += 1
            more = bool(self._queue)
            self._cond.notify_all()
        log.info("uploaded %s (attempt %d)", head.filename, head.attempts + 1)
        self._publish(SEGMENT_UPLOADED, {"id": head.id, "filename": head.filename, "attempts": head.attempts})
        return more

    def _record_failure(self, head: SegmentDescriptor, exc: BaseException) -> bool:
        """Count a failed attempt; return True when the head was dead-lettered."""
        with self._cond:
            head.attempts += 1
            attempts = head.attempts
            self._stats["failed_attempts"] += 1
            dead = self._max_attempts is not None and attempts >= self._max_attempts
            if dead:
                self._pop_head_locked(head)
                self._dead_letters.append(head)
                self._stats["dead_lettered"] += 1
            self._cond.notify_all()

        status = getattr(exc, "status", None)
        log.warning("upload failed for %s (attempt %d): %s", head.filename, attempts, exc)
        self._publish(
            UPLOAD_FAILED,
            {"id": head.id, "filename": head.filename, "attempts": attempts, "status": status, "error": str(exc)},
        )
        if dead:
            log.error(
                "giving up on %s after %d attempts; moved to dead-letter list",
                head.filename,
                attempts,
            )
            self._publish(SEGMENT_DEAD_LETTERED, {"id": head.id, "filename": head.filename, "attempts": attempts})
            return True
        self._arm_retry(attempts)
        return False

    def _arm_retry(self, attempts: int) -> None:
        delay = backoff_delay(attempts, self._retry_base_delay, self._retry_max_delay)
        if delay <= 0 or self._loop is None:
            return
        self._cancel_retry()
        log.debug("retrying head in %.1fs", delay)
        self._retry_handle = self._loop.call_later(delay, self._retry_fire)

    def _retry_fire(self) -> None:
        self._retry_handle = None
        self._request_drain("retry")

    def _cancel_retry(self) -> None:
        handle = self._retry_handle
        self._retry_handle = None
        if handle is not None:
            handle.cancel()

    def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.publish(event_type, payload)

    # --- introspection ---
    def pending(self) -> list[SegmentDescriptor]:
        with self._cond:
            return [dataclasses.replace(item) for item in self._queue]

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def dead_letters(self) -> list[SegmentDescriptor]:
        with self._cond:
            return [dataclasses.replace(item) for item in self._dead_letters]

    def requeue_dead_letters(self) -> int:
        with self._cond:
            items = list(self._dead_letters)
            self._dead_letters.clear()
            self._queue.extend(items)
            self._cond.notify_all()
        if items:
            log.info("requeued %d dead-lettered segment(s)", len(items))
            self._request_drain("dead letters requeued")
        return len(items)

    def stats(self) -> dict[str, int]:
        with self._cond:
            snapshot = dict(self._stats)
            snapshot["pending"] = len(self._queue)
            snapshot["dead_letters"] = len(self._dead_letters)
        return snapshot

    def is_draining(self) -> bool:
        with self._cond:
            return self._draining or self._pending_kicks > 0

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        """Wait until no drain is running or scheduled."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._draining or self._pending_kicks > 0:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until every queued descriptor has been delivered or dropped."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._queue:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True
