import sys
import threading

import pytest

from segrelay.capture_source import SourceTerminatedUnexpectedly, SubprocessCaptureSource


class _Collector:
    def __init__(self):
        self.data = bytearray()
        self.ended = threading.Event()
        self.error = None

    def on_data(self, chunk):
        self.data.extend(chunk)

    def on_end(self, error):
        self.error = error
        self.ended.set()


def test_reads_stdout_and_reports_unexpected_exit():
    source = SubprocessCaptureSource(
        [sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'abc' * 1000)"],
        read_size=512,
    )
    collector = _Collector()
    source.start(collector.on_data, collector.on_end)

    assert collector.ended.wait(10)
    assert bytes(collector.data) == b"abc" * 1000
    assert isinstance(collector.error, SourceTerminatedUnexpectedly)
    source.stop()


def test_stop_is_not_reported_as_failure():
    source = SubprocessCaptureSource([sys.executable, "-c", "import time; time.sleep(30)"], stop_timeout=5)
    collector = _Collector()
    source.start(collector.on_data, collector.on_end)

    source.pause()
    source.resume()
    source.stop()

    assert collector.ended.wait(10)
    assert collector.error is None


def test_rejects_empty_command_and_double_start():
    with pytest.raises(ValueError):
        SubprocessCaptureSource([])

    source = SubprocessCaptureSource([sys.executable, "-c", "import time; time.sleep(30)"])
    collector = _Collector()
    source.start(collector.on_data, collector.on_end)
    try:
        with pytest.raises(RuntimeError):
            source.start(collector.on_data, collector.on_end)
    finally:
        source.stop()
