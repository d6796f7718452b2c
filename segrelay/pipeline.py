"""Wire the recorder, store, monitor and upload queue from configuration."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Dict

from segrelay.capture_source import CaptureSource, SubprocessCaptureSource
from segrelay.config import get_cfg
from segrelay.crypto import CryptoTransform, load_key
from segrelay.delivery import HttpSegmentUploader, SegmentUploader
from segrelay.encoding import SAMPLE_WIDTH, pcm16_to_wav
from segrelay.network_monitor import ConnectivityProbe, NetworkQuality, NetworkQualityMonitor
from segrelay.recorder import Finalizer, RecordingMode, SegmentRecorder
from segrelay.scheduling import Scheduler
from segrelay.segment_store import EncryptedFileSegmentStore, MemorySegmentStore, SegmentStore
from segrelay.session_events import NETWORK_DEGRADED, NETWORK_RESTORED, SessionEventBus
from segrelay.upload_queue import UploadQueueManager

log = logging.getLogger("segrelay.pipeline")

SourceFactory = Callable[[RecordingMode], CaptureSource]

STORAGE_BACKENDS = ("memory", "encrypted_disk")


class DegradedNetworkAdvisory:
    """Tell listeners when uploads stall while a session is still recording."""

    def __init__(
        self,
        monitor: NetworkQualityMonitor,
        recorder: SegmentRecorder,
        events: SessionEventBus,
    ) -> None:
        self._monitor = monitor
        self._recorder = recorder
        self._events = events
        self._lock = threading.Lock()
        self._degraded = False
        monitor.add_listener(self._on_eligibility_changed)

    @property
    def degraded(self) -> bool:
        with self._lock:
            return self._degraded

    def _on_eligibility_changed(self, eligible: bool, quality: NetworkQuality) -> None:
        with self._lock:
            if not eligible and self._recorder.is_recording():
                self._degraded = True
                event = NETWORK_DEGRADED
            elif eligible and self._degraded:
                self._degraded = False
                event = NETWORK_RESTORED
            else:
                return
        if event == NETWORK_DEGRADED:
            log.warning("network %s: segments will queue locally until it recovers", quality.name.lower())
        else:
            log.info("network restored (%s); resuming uploads", quality.name.lower())
        self._events.publish(event, {"quality": quality.name.lower()})

    def close(self) -> None:
        self._monitor.remove_listener(self._on_eligibility_changed)


def _build_crypto(cfg: Dict[str, Any]) -> CryptoTransform:
    raw = (cfg.get("crypto") or {}).get("key") or ""
    if not raw:
        raise ValueError("crypto.key (or ENCRYPTION_KEY) must be set for the encrypted_disk backend")
    return CryptoTransform(load_key(raw))


def build_store(cfg: Dict[str, Any]) -> SegmentStore:
    storage = cfg.get("storage") or {}
    backend = str(storage.get("backend", "memory")).strip().lower()
    if backend == "memory":
        return MemorySegmentStore()
    if backend == "encrypted_disk":
        return EncryptedFileSegmentStore(
            Path(storage.get("recordings_dir", "./recordings")).expanduser(),
            _build_crypto(cfg),
            keep_decrypted_copy=bool(storage.get("keep_decrypted_copy", True)),
        )
    raise ValueError(f"unknown storage backend {backend!r}; expected one of {STORAGE_BACKENDS}")


def build_uploader(cfg: Dict[str, Any]) -> HttpSegmentUploader:
    upload = cfg.get("upload") or {}
    return HttpSegmentUploader(
        str(upload.get("endpoint") or ""),
        field_name=str(upload.get("field_name") or "file"),
        timeout=float(upload.get("timeout_sec", 60.0)),
        token_provider=lambda: upload.get("token") or None,
        headers=upload.get("headers") or {},
    )


def build_source(cfg: Dict[str, Any], mode: RecordingMode) -> CaptureSource:
    capture = cfg.get("capture") or {}
    key = "screen_command" if mode.has_video else "audio_command"
    command = capture.get(key)
    if not command:
        raise ValueError(f"capture.{key} is not configured")
    return SubprocessCaptureSource(
        command,
        has_video=mode.has_video,
        read_size=int(capture.get("read_size", 4096)),
    )


def build_finalizer(cfg: Dict[str, Any]) -> Finalizer | None:
    recorder = cfg.get("recorder") or {}
    if not recorder.get("wrap_wav", True):
        return None
    sample_rate = int(recorder.get("sample_rate", 48000))
    channels = int(recorder.get("channels", 1))

    def _finalize(data: bytes, mode: RecordingMode) -> bytes:
        if mode is RecordingMode.AUDIO:
            return pcm16_to_wav(data, sample_rate, channels)
        return data

    return _finalize


class RelayPipeline:
    """Own one recorder and its upload queue for the life of the process."""

    def __init__(
        self,
        cfg: Dict[str, Any],
        *,
        store: SegmentStore,
        queue: UploadQueueManager,
        recorder: SegmentRecorder,
        monitor: NetworkQualityMonitor,
        events: SessionEventBus,
        source_factory: SourceFactory,
        probe: ConnectivityProbe | None = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.queue = queue
        self.recorder = recorder
        self.monitor = monitor
        self.events = events
        self.probe = probe
        self._source_factory = source_factory
        self.advisory = DegradedNetworkAdvisory(monitor, recorder, events)
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        storage = self.cfg.get("storage") or {}
        if isinstance(self.store, EncryptedFileSegmentStore) and storage.get("requeue_on_startup", True):
            for descriptor in self.store.recover():
                self.queue.enqueue(descriptor)
        self.queue.start()
        if self.probe is not None:
            self.probe.start()

    def record(self, mode: RecordingMode | str | None = None) -> bool:
        if not self._started:
            self.start()
        if mode is None:
            mode = (self.cfg.get("recorder") or {}).get("mode", "audio")
        mode = RecordingMode.parse(mode)
        return self.recorder.start(mode, self._source_factory(mode))

    def stop_recording(self) -> bool:
        return self.recorder.stop()

    def shutdown(self, drain_timeout: float | None = None) -> bool:
        """Stop recording, wait for the queue to empty and release resources.

        Returns True when every segment was delivered before the timeout.
        """

        self.recorder.stop()
        if drain_timeout is None:
            drain_timeout = float((self.cfg.get("upload") or {}).get("drain_timeout_sec", 120.0))
        drained = True
        if self._started:
            drained = self.queue.wait_until_drained(drain_timeout)
            if not drained:
                log.warning("%d segment(s) still pending after %.0fs", len(self.queue), drain_timeout)
        if self.probe is not None:
            self.probe.stop()
        self.advisory.close()
        self.queue.shutdown()
        return drained


def build_pipeline(
    cfg: Dict[str, Any] | None = None,
    *,
    uploader: SegmentUploader | None = None,
    source_factory: SourceFactory | None = None,
    scheduler: Scheduler | None = None,
) -> RelayPipeline:
    cfg = cfg if cfg is not None else get_cfg()
    recorder_cfg = cfg.get("recorder") or {}
    upload_cfg = cfg.get("upload") or {}
    network_cfg = cfg.get("network") or {}

    events = SessionEventBus()
    store = build_store(cfg)
    monitor = NetworkQualityMonitor(
        min_quality=NetworkQuality.parse(network_cfg.get("min_quality", "fair"))
    )
    if uploader is None:
        uploader = build_uploader(cfg)

    is_authorized = None
    if upload_cfg.get("require_token"):
        is_authorized = lambda: bool(upload_cfg.get("token"))  # noqa: E731

    max_attempts = upload_cfg.get("max_attempts")
    queue = UploadQueueManager(
        store,
        uploader,
        monitor,
        is_authorized=is_authorized,
        pacing_delay=float(upload_cfg.get("pacing_delay_sec", 0.5)),
        retry_base_delay=float(upload_cfg.get("retry_base_delay_sec", 5.0)),
        retry_max_delay=float(upload_cfg.get("retry_max_delay_sec", 300.0)),
        max_attempts=int(max_attempts) if max_attempts else None,
        events=events,
    )

    extensions = dict(recorder_cfg.get("extensions") or {})
    if not recorder_cfg.get("wrap_wav", True) and extensions.get("audio", "wav") == "wav":
        extensions["audio"] = "pcm"
    recorder = SegmentRecorder(
        store,
        queue,
        rotation_interval=float(recorder_cfg.get("rotation_interval_sec", 30.0)),
        scheduler=scheduler,
        extensions=extensions,
        finalizer=build_finalizer(cfg),
        frame_sizes={"audio": SAMPLE_WIDTH * int(recorder_cfg.get("channels", 1))},
        events=events,
    )

    probe = None
    probe_cfg = network_cfg.get("probe") or {}
    if probe_cfg.get("enabled") and probe_cfg.get("host"):
        probe = ConnectivityProbe(
            monitor,
            str(probe_cfg["host"]),
            int(probe_cfg.get("port", 443)),
            interval=float(probe_cfg.get("interval_sec", 15.0)),
            timeout=float(probe_cfg.get("timeout_sec", 3.0)),
        )

    if source_factory is None:
        source_factory = lambda mode: build_source(cfg, mode)  # noqa: E731

    return RelayPipeline(
        cfg,
        store=store,
        queue=queue,
        recorder=recorder,
        monitor=monitor,
        events=events,
        source_factory=source_factory,
        probe=probe,
    )
