"""Wrap raw PCM capture bytes into standalone WAV payloads."""

from __future__ import annotations

import io
import wave

SAMPLE_WIDTH = 2  # 16-bit


def pcm16_to_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Return a WAV file containing signed 16-bit little-endian ``pcm``.

    A trailing partial frame is dropped so the header stays consistent.
    """

    frame_size = SAMPLE_WIDTH * channels
    usable = len(pcm) - (len(pcm) % frame_size)
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(SAMPLE_WIDTH)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm[:usable])
    return buf.getvalue()
