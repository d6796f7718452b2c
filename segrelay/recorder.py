"""Chunked recording state machine.

One recorder owns at most one capture session.  While recording, the
buffered capture bytes are finalized into a :class:`Segment` every
``rotation_interval`` seconds, and once more on ``stop``.  Each segment is
written to the segment store and then enqueued for upload, strictly in
capture order.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from segrelay.capture_source import CaptureSource
from segrelay.scheduling import ScheduledHandle, Scheduler, ThreadingScheduler
from segrelay.segment_store import SegmentStore
from segrelay.segments import (
    Segment,
    SegmentDescriptor,
    build_segment_filename,
    content_type_for,
    new_segment_id,
)
from segrelay.session_events import (
    RECORDING_ERROR,
    SEGMENT_FINALIZED,
    SESSION_ENDED,
    SESSION_STARTED,
    SessionEventBus,
)

log = logging.getLogger("segrelay.recorder")

DEFAULT_ROTATION_INTERVAL = 30.0
DEFAULT_EXTENSIONS: dict[str, str] = {"audio": "wav", "screen": "webm"}


class RecordingMode(enum.Enum):
    AUDIO = "audio"
    SCREEN = "screen"

    @property
    def has_video(self) -> bool:
        return self is RecordingMode.SCREEN

    @property
    def kind(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: "RecordingMode | str") -> "RecordingMode":
        if isinstance(value, cls):
            return value
        token = str(value).strip().lower()
        if token in {"screen", "video", "audio+video"}:
            return cls.SCREEN
        if token in {"audio", "audio-only"}:
            return cls.AUDIO
        raise ValueError(f"unknown recording mode: {value!r}")


class RecordingState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPED = "stopped"


_ACTIVE_STATES = (RecordingState.RECORDING, RecordingState.PAUSED)


class AlreadyActive(RuntimeError):
    """A session is already recording on this recorder."""


class SegmentQueue(Protocol):
    def enqueue(self, descriptor: SegmentDescriptor) -> None: ...


Finalizer = Callable[[bytes, RecordingMode], bytes]


@dataclass(frozen=True)
class _PendingChunk:
    data: bytes
    mode: RecordingMode
    sequence: int
    created_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SegmentRecorder:
    """Rotate a capture stream into fixed-duration segments."""

    def __init__(
        self,
        store: SegmentStore,
        queue: SegmentQueue,
        *,
        rotation_interval: float = DEFAULT_ROTATION_INTERVAL,
        scheduler: Scheduler | None = None,
        wall_clock: Callable[[], datetime] | None = None,
        extensions: Mapping[str, str] | None = None,
        finalizer: Finalizer | None = None,
        frame_sizes: Mapping[str, int] | None = None,
        events: SessionEventBus | None = None,
    ) -> None:
        if rotation_interval <= 0:
            raise ValueError("rotation_interval must be positive")
        self._store = store
        self._queue = queue
        self._interval = float(rotation_interval)
        self._scheduler: Scheduler = scheduler or ThreadingScheduler()
        self._wall_clock = wall_clock or _utc_now
        self._extensions = dict(DEFAULT_EXTENSIONS)
        if extensions:
            self._extensions.update({k: str(v).lstrip(".") for k, v in extensions.items()})
        self._finalizer = finalizer
        # Rotation cuts on a whole frame per kind; the remainder opens the next buffer.
        self._frame_sizes = {k: max(1, int(v)) for k, v in (frame_sizes or {}).items()}
        self._events = events

        # _state_lock guards state, buffer and timer fields.  _finalize_guard
        # serializes finalize+emit so segments leave in capture order.
        self._state_lock = threading.Lock()
        self._finalize_guard = threading.Lock()

        self._state = RecordingState.IDLE
        self._mode: RecordingMode | None = None
        self._source: CaptureSource | None = None
        self._session_id: str | None = None
        self._buffer = bytearray()
        self._chunk_sequence = 0
        self._stopping = False

        self._timer_handle: ScheduledHandle | None = None
        self._timer_generation = 0
        self._armed_at = 0.0
        self._armed_delay = 0.0
        self._remaining: float | None = None

    # --- introspection ---
    @property
    def state(self) -> RecordingState:
        with self._state_lock:
            return self._state

    @property
    def mode(self) -> RecordingMode | None:
        with self._state_lock:
            return self._mode

    @property
    def chunk_sequence(self) -> int:
        with self._state_lock:
            return self._chunk_sequence

    @property
    def session_id(self) -> str | None:
        with self._state_lock:
            return self._session_id

    @property
    def rotation_interval(self) -> float:
        return self._interval

    @property
    def buffered_bytes(self) -> int:
        with self._state_lock:
            return len(self._buffer)

    def is_recording(self) -> bool:
        return self.state is RecordingState.RECORDING

    # --- lifecycle ---
    def _check_can_start(self) -> None:
        if self._state in _ACTIVE_STATES:
            raise AlreadyActive(f"session {self._session_id} is {self._state.value}")

    def start(self, mode: RecordingMode | str, source: CaptureSource) -> bool:
        mode = RecordingMode.parse(mode)
        with self._state_lock:
            try:
                self._check_can_start()
            except AlreadyActive as exc:
                log.info("start ignored: %s", exc)
                return False
            self._state = RecordingState.RECORDING
            self._mode = mode
            self._source = source
            self._session_id = new_segment_id()
            self._buffer = bytearray()
            self._chunk_sequence = 0
            self._stopping = False
            self._remaining = None
            self._arm_timer_locked(self._interval)
            session_id = self._session_id

        try:
            source.start(self._on_data, self._on_source_end)
        except Exception as exc:
            with self._state_lock:
                self._disarm_timer_locked()
                self._state = RecordingState.IDLE
                self._source = None
            log.error("failed to start %s capture: %s", mode.value, exc)
            self._publish(RECORDING_ERROR, {"session_id": session_id, "error": str(exc)})
            raise

        log.info(
            "%s recording started with %.0f-second chunks",
            "Screen" if mode.has_video else "Audio",
            self._interval,
        )
        self._publish(SESSION_STARTED, {"session_id": session_id, "mode": mode.value})
        return True

    def pause(self) -> bool:
        with self._state_lock:
            if self._state is not RecordingState.RECORDING:
                log.debug("pause ignored in state %s", self._state.value)
                return False
            elapsed = self._scheduler.monotonic() - self._armed_at
            self._remaining = max(0.0, self._armed_delay - elapsed)
            self._disarm_timer_locked()
            self._state = RecordingState.PAUSED
            source = self._source
        if source is not None:
            try:
                source.pause()
            except Exception:
                log.exception("capture source failed to pause")
        log.info("recording paused (%.1fs left in current chunk)", self._remaining or 0.0)
        return True

    def resume(self) -> bool:
        with self._state_lock:
            if self._state is not RecordingState.PAUSED:
                log.debug("resume ignored in state %s", self._state.value)
                return False
            self._state = RecordingState.RECORDING
            delay = self._interval if self._remaining is None else self._remaining
            self._remaining = None
            self._arm_timer_locked(delay)
            source = self._source
        if source is not None:
            try:
                source.resume()
            except Exception:
                log.exception("capture source failed to resume")
        log.info("recording resumed")
        return True

    def stop(self) -> bool:
        with self._finalize_guard:
            with self._state_lock:
                if self._state not in _ACTIVE_STATES:
                    log.debug("stop ignored in state %s", self._state.value)
                    return False
                self._disarm_timer_locked()
                self._stopping = True
                source = self._source
                session_id = self._session_id

            if source is not None:
                try:
                    source.stop()
                except Exception:
                    log.exception("capture source failed to stop cleanly")

            with self._state_lock:
                pending = self._take_buffer_locked(final=True)
                self._state = RecordingState.STOPPED
                self._source = None
                self._stopping = False
            notices = self._emit_pending(pending)

        log.info("Recording stopped")
        notices.append((SESSION_ENDED, {"session_id": session_id, "reason": "stopped"}))
        self._publish_all(notices)
        return True

    # --- capture callbacks ---
    def _on_data(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._state_lock:
            if self._state in _ACTIVE_STATES:
                self._buffer.extend(chunk)

    def _on_source_end(self, error: BaseException | None) -> None:
        if error is None:
            return
        with self._state_lock:
            if self._stopping or self._state not in _ACTIVE_STATES:
                return
        log.warning("capture source terminated unexpectedly: %s", error)
        with self._finalize_guard:
            with self._state_lock:
                if self._stopping or self._state not in _ACTIVE_STATES:
                    return
                self._disarm_timer_locked()
                pending = self._take_buffer_locked(final=True)
                self._state = RecordingState.STOPPED
                self._source = None
                session_id = self._session_id
            notices = self._emit_pending(pending)
        notices.append(
            (
                SESSION_ENDED,
                {"session_id": session_id, "reason": "source_terminated", "error": str(error)},
            )
        )
        self._publish_all(notices)

    # --- rotation ---
    def _arm_timer_locked(self, delay: float) -> None:
        self._disarm_timer_locked()
        generation = self._timer_generation
        self._armed_at = self._scheduler.monotonic()
        self._armed_delay = delay
        self._timer_handle = self._scheduler.call_later(
            delay, lambda: self._on_rotation_timer(generation)
        )

    def _disarm_timer_locked(self) -> None:
        self._timer_generation += 1
        handle = self._timer_handle
        self._timer_handle = None
        if handle is not None:
            handle.cancel()

    def _on_rotation_timer(self, generation: int) -> None:
        if not self._finalize_guard.acquire(blocking=False):
            with self._state_lock:
                if generation == self._timer_generation and self._state is RecordingState.RECORDING:
                    log.debug("rotation coalesced with in-flight finalize")
                    self._arm_timer_locked(self._interval)
            return
        notices: list[tuple[str, dict[str, Any]]] = []
        try:
            with self._state_lock:
                if generation != self._timer_generation or self._state is not RecordingState.RECORDING:
                    return
                pending = self._take_buffer_locked()
                self._arm_timer_locked(self._interval)
            notices = self._emit_pending(pending)
        finally:
            self._finalize_guard.release()
        self._publish_all(notices)

    def _take_buffer_locked(self, *, final: bool = False) -> _PendingChunk | None:
        data = bytes(self._buffer)
        carry = b""
        if not final and self._mode is not None:
            frame_size = self._frame_sizes.get(self._mode.kind, 1)
            cut = len(data) - (len(data) % frame_size)
            data, carry = data[:cut], data[cut:]
        self._buffer = bytearray(carry)
        if not data or self._mode is None:
            log.debug("No chunks to save")
            return None
        self._chunk_sequence += 1
        return _PendingChunk(
            data=data,
            mode=self._mode,
            sequence=self._chunk_sequence,
            created_at=self._wall_clock(),
        )

    def _build_segment(self, pending: _PendingChunk) -> Segment:
        payload = pending.data
        if self._finalizer is not None:
            try:
                payload = self._finalizer(pending.data, pending.mode)
            except Exception:
                log.exception("segment finalizer failed; keeping raw capture bytes")
                payload = pending.data
        kind = pending.mode.kind
        ext = self._extensions.get(kind, DEFAULT_EXTENSIONS[kind])
        return Segment(
            id=new_segment_id(),
            filename=build_segment_filename(kind, pending.created_at, pending.sequence, ext),
            payload=payload,
            created_at=pending.created_at,
            kind=kind,
            sequence=pending.sequence,
            content_type=content_type_for(kind, ext),
        )

    def _emit_pending(self, pending: _PendingChunk | None) -> list[tuple[str, dict[str, Any]]]:
        """Store and enqueue one segment; return the events to publish once the guard is released."""
        if pending is None:
            return []
        segment = self._build_segment(pending)
        try:
            self._store.put(segment.id, segment.filename, segment.payload)
        except Exception as exc:
            log.exception("Error saving chunk %s", segment.filename)
            return [
                (
                    RECORDING_ERROR,
                    {"filename": segment.filename, "sequence": segment.sequence, "error": str(exc)},
                )
            ]
        self._queue.enqueue(segment.descriptor())
        log.info("Chunk %d saved: %s (%d bytes)", segment.sequence, segment.filename, segment.size)
        return [
            (
                SEGMENT_FINALIZED,
                {
                    "id": segment.id,
                    "filename": segment.filename,
                    "sequence": segment.sequence,
                    "size": segment.size,
                    "created_at": segment.created_at.isoformat(),
                },
            )
        ]

    def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.publish(event_type, payload)

    def _publish_all(self, notices: list[tuple[str, dict[str, Any]]]) -> None:
        for event_type, payload in notices:
            self._publish(event_type, payload)
