"""In-process publisher for recording and upload notifications."""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any, Deque

log = logging.getLogger("segrelay.events")

SESSION_STARTED = "session_started"
SESSION_ENDED = "session_ended"
SEGMENT_FINALIZED = "segment_finalized"
RECORDING_ERROR = "recording_error"
SEGMENT_UPLOADED = "segment_uploaded"
SEGMENT_DROPPED = "segment_dropped"
UPLOAD_FAILED = "upload_failed"
SEGMENT_DEAD_LETTERED = "segment_dead_lettered"
NETWORK_DEGRADED = "network_degraded"
NETWORK_RESTORED = "network_restored"

EventCallback = Callable[[dict[str, Any]], None]


class SessionEventBus:
    """Fan-out events to registered callbacks and keep a short history."""

    def __init__(self, *, history_limit: int = 256) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._history: Deque[dict[str, Any]] = deque(maxlen=history_limit)
        self._subscribers: list[EventCallback] = []
        self._seq = 0
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: EventCallback) -> None:
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

    def publish(self, event_type: str, payload: Any = None) -> str:
        if not event_type or not isinstance(event_type, str):
            raise ValueError("event_type must be a non-empty string")
        timestamp = time.time()
        with self._lock:
            self._seq += 1
            seq = self._seq
            event_payload = copy.deepcopy(payload) if isinstance(payload, (dict, list)) else payload
            event = {
                "id": str(seq),
                "seq": seq,
                "type": event_type,
                "timestamp": timestamp,
                "payload": event_payload,
            }
            self._history.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                log.exception("event subscriber failed for %s", event_type)
        return event["id"]

    def history_snapshot(self, event_type: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            history = list(self._history)
        if event_type is None:
            return history
        return [event for event in history if event["type"] == event_type]
