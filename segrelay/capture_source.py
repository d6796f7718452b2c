"""Capture sources feeding raw media bytes into the segment recorder."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable, Sequence

log = logging.getLogger("segrelay.capture")

DataCallback = Callable[[bytes], None]
EndCallback = Callable[["BaseException | None"], None]


class SourceTerminatedUnexpectedly(RuntimeError):
    """Capture stream ended without an explicit stop."""


class CaptureSource:
    """Minimal protocol for capture backends.

    ``start`` begins pushing bytes to ``on_data``; ``on_end`` is called once
    when the stream ends, with ``None`` after :meth:`stop` and an exception
    otherwise.
    """

    has_video: bool = False

    def start(self, on_data: DataCallback, on_end: EndCallback) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def pause(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def resume(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class SubprocessCaptureSource(CaptureSource):
    """Read a capture command's stdout (arecord, ffmpeg) on a reader thread."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        has_video: bool = False,
        read_size: int = 4096,
        stop_timeout: float = 5.0,
    ) -> None:
        if not command:
            raise ValueError("capture command must not be empty")
        self.command = list(command)
        self.has_video = has_video
        self.read_size = max(1, int(read_size))
        self.stop_timeout = stop_timeout
        self._proc: subprocess.Popen[bytes] | None = None
        self._reader: threading.Thread | None = None
        self._stop_requested = threading.Event()
        self._paused = False

    def start(self, on_data: DataCallback, on_end: EndCallback) -> None:
        if self._proc is not None:
            raise RuntimeError("capture source already started")
        self._stop_requested.clear()
        self._proc = subprocess.Popen(
            self.command,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            bufsize=0,
            start_new_session=True,
        )
        log.info("capture started: %s (pid %s)", self.command[0], self._proc.pid)
        self._reader = threading.Thread(
            target=self._pump,
            args=(self._proc, on_data, on_end),
            name="capture-reader",
            daemon=True,
        )
        self._reader.start()

    def _pump(
        self,
        proc: subprocess.Popen[bytes],
        on_data: DataCallback,
        on_end: EndCallback,
    ) -> None:
        assert proc.stdout is not None
        error: BaseException | None = None
        try:
            while True:
                chunk = proc.stdout.read(self.read_size)
                if not chunk:
                    break
                on_data(chunk)
        except (OSError, ValueError) as exc:
            if not self._stop_requested.is_set():
                error = exc
        returncode = proc.wait()
        if error is None and not self._stop_requested.is_set():
            error = SourceTerminatedUnexpectedly(
                f"{self.command[0]} exited with code {returncode}"
            )
        on_end(error)

    def _signal(self, signum: int) -> None:
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, signum)
        except ProcessLookupError:
            pass

    def pause(self) -> None:
        if self._paused:
            return
        self._signal(signal.SIGSTOP)
        self._paused = True

    def resume(self) -> None:
        if not self._paused:
            return
        self._signal(signal.SIGCONT)
        self._paused = False

    def stop(self) -> None:
        proc = self._proc
        if proc is None:
            return
        self._stop_requested.set()
        if self._paused:
            self.resume()
        if proc.poll() is None:
            try:
                proc.terminate()
                proc.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                log.warning("capture process %s ignored SIGTERM; killing", proc.pid)
                proc.kill()
                proc.wait()
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=self.stop_timeout)
        self._proc = None
        self._reader = None
        log.info("capture stopped")
