import copy

import pytest

from segrelay import config as config_module
from segrelay.crypto import CryptoTransform
from segrelay.delivery import SegmentUploader
from segrelay.pipeline import DegradedNetworkAdvisory, build_pipeline, build_store
from segrelay.recorder import RecordingState
from segrelay.segment_store import EncryptedFileSegmentStore, MemorySegmentStore
from segrelay.session_events import NETWORK_DEGRADED, NETWORK_RESTORED

from conftest import TEST_KEY, ScriptedSource


class RecordingUploader(SegmentUploader):
    def __init__(self):
        self.delivered = []
        self.closed = False

    async def deliver(self, descriptor, payload):
        self.delivered.append((descriptor.filename, descriptor.content_type, payload))

    async def close(self):
        self.closed = True


@pytest.fixture
def cfg(tmp_path):
    cfg = copy.deepcopy(config_module._DEFAULTS)
    cfg["upload"]["endpoint"] = "http://127.0.0.1:9/upload"
    cfg["upload"]["pacing_delay_sec"] = 0
    cfg["upload"]["retry_base_delay_sec"] = 0
    cfg["storage"]["recordings_dir"] = str(tmp_path / "recordings")
    cfg["crypto"]["key"] = TEST_KEY.hex()
    return cfg


def _pipeline(cfg, scheduler, sources, uploader):
    def factory(mode):
        source = ScriptedSource(has_video=mode.has_video)
        sources.append(source)
        return source

    return build_pipeline(cfg, uploader=uploader, source_factory=factory, scheduler=scheduler)


def test_audio_session_is_wrapped_and_delivered(cfg, scheduler):
    sources = []
    uploader = RecordingUploader()
    pipeline = _pipeline(cfg, scheduler, sources, uploader)
    assert isinstance(pipeline.store, MemorySegmentStore)

    assert pipeline.record() is True
    sources[0].feed(b"\x00\x01" * 100)
    scheduler.advance(30)
    sources[0].feed(b"\x02\x03" * 50)

    assert pipeline.shutdown(drain_timeout=5) is True
    assert pipeline.recorder.state is RecordingState.STOPPED
    assert uploader.closed

    names = [name for name, _, _ in uploader.delivered]
    assert len(names) == 2
    assert names[0].endswith("_chunk_1.wav") and names[1].endswith("_chunk_2.wav")
    assert all(ctype == "audio/wav" for _, ctype, _ in uploader.delivered)
    assert all(payload.startswith(b"RIFF") for _, _, payload in uploader.delivered)
    assert len(pipeline.store) == 0


def test_screen_session_keeps_raw_container(cfg, scheduler):
    sources = []
    uploader = RecordingUploader()
    pipeline = _pipeline(cfg, scheduler, sources, uploader)

    pipeline.record("screen")
    assert sources[0].has_video
    sources[0].feed(b"\x1a\x45\xdf\xa3webm")
    pipeline.shutdown(drain_timeout=5)

    assert uploader.delivered[0][0].startswith("screen_recording_")
    assert uploader.delivered[0][1] == "video/webm"
    assert uploader.delivered[0][2] == b"\x1a\x45\xdf\xa3webm"


def test_raw_pcm_when_wav_wrapping_disabled(cfg, scheduler):
    cfg["recorder"]["wrap_wav"] = False
    sources = []
    uploader = RecordingUploader()
    pipeline = _pipeline(cfg, scheduler, sources, uploader)

    pipeline.record("audio")
    sources[0].feed(b"\x00\x01")
    pipeline.shutdown(drain_timeout=5)

    assert uploader.delivered[0][0].endswith(".pcm")
    assert uploader.delivered[0][2] == b"\x00\x01"


def test_encrypted_backend_requeues_leftovers_first(cfg, scheduler, tmp_path):
    cfg["storage"]["backend"] = "encrypted_disk"
    leftover_store = EncryptedFileSegmentStore(tmp_path / "recordings", CryptoTransform(TEST_KEY))
    leftover_store.put("old", "audio_recording_old_chunk_9.wav", b"left over")

    sources = []
    uploader = RecordingUploader()
    pipeline = _pipeline(cfg, scheduler, sources, uploader)
    assert isinstance(pipeline.store, EncryptedFileSegmentStore)

    pipeline.record("audio")
    sources[0].feed(b"\x00\x00")
    assert pipeline.shutdown(drain_timeout=5) is True

    assert uploader.delivered[0][0] == "audio_recording_old_chunk_9.wav"
    assert uploader.delivered[0][2] == b"left over"
    assert uploader.delivered[1][0].endswith("_chunk_1.wav")
    assert not any((tmp_path / "recordings" / "encrypted").iterdir())


def test_offline_network_leaves_segments_pending(cfg, scheduler):
    sources = []
    uploader = RecordingUploader()
    pipeline = _pipeline(cfg, scheduler, sources, uploader)
    pipeline.monitor.update(False)

    pipeline.record("audio")
    sources[0].feed(b"\x00\x00")
    assert pipeline.shutdown(drain_timeout=0.2) is False

    assert uploader.delivered == []
    assert len(pipeline.queue.pending()) == 1


def test_degraded_advisory_only_while_recording(cfg, scheduler):
    sources = []
    pipeline = _pipeline(cfg, scheduler, sources, RecordingUploader())
    events = pipeline.events

    pipeline.monitor.update(False)
    pipeline.monitor.update(True)
    assert events.history_snapshot(NETWORK_DEGRADED) == []

    pipeline.record("audio")
    pipeline.monitor.update(True, effective_type="2g")
    assert pipeline.advisory.degraded
    pipeline.monitor.update(True, effective_type="4g")
    assert not pipeline.advisory.degraded

    assert events.history_snapshot(NETWORK_DEGRADED)[0]["payload"] == {"quality": "poor"}
    assert events.history_snapshot(NETWORK_RESTORED)[0]["payload"] == {"quality": "good"}
    pipeline.shutdown(drain_timeout=1)


def test_advisory_close_detaches_listener(cfg, scheduler):
    pipeline = _pipeline(cfg, scheduler, [], RecordingUploader())
    advisory = DegradedNetworkAdvisory(pipeline.monitor, pipeline.recorder, pipeline.events)
    advisory.close()
    pipeline.record("audio")
    pipeline.monitor.update(False)
    assert not advisory.degraded
    pipeline.shutdown(drain_timeout=0.1)


def test_build_store_validation(cfg):
    cfg["storage"]["backend"] = "s3"
    with pytest.raises(ValueError):
        build_store(cfg)

    cfg["storage"]["backend"] = "encrypted_disk"
    cfg["crypto"]["key"] = ""
    with pytest.raises(ValueError):
        build_store(cfg)
