"""Audio transcoding between the telephony leg and the agent service.

Upstream, the caller's 8 kHz mu-law bytes already match the audio config the
agent stream is opened with, so they pass through untouched. Downstream, the
agent's LINEAR16 response (a WAV container, or bare PCM) is resampled to 8 kHz
and companded back to mu-law.
"""

from __future__ import annotations

import io
import logging

import numpy as np
import soundfile as sf

from bridge.errors import TranscodeError
from telephony.g711 import ulaw_encode

LOGGER = logging.getLogger(__name__)

TELEPHONY_SAMPLE_RATE = 8000


def pcm16_resample(pcm: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    if src_rate == dst_rate:
        return pcm
    if pcm.size == 0:
        return pcm.astype(np.int16)

    x_old = np.arange(pcm.size, dtype=np.float32)
    x_new = np.linspace(0, pcm.size - 1, int(pcm.size * dst_rate / src_rate), dtype=np.float32)

    y_old = pcm.astype(np.float32)
    y_new = np.interp(x_new, x_old, y_old)

    return np.clip(y_new, -32768, 32767).astype(np.int16)


def decode_linear16(buffer: bytes, *, fallback_rate: int) -> tuple[np.ndarray, int]:
    """Decode a LINEAR16 buffer into mono int16 samples and their sample rate.

    WAV (or any container libsndfile understands) is read with its own rate;
    anything else is treated as bare little-endian PCM16 at ``fallback_rate``.
    """

    try:
        with sf.SoundFile(io.BytesIO(buffer), mode="r") as f:
            audio = f.read(dtype="int16")
            src_rate = int(f.samplerate)
    except RuntimeError:
        if fallback_rate <= 0:
            raise TranscodeError("No sample rate available for header-less PCM audio")
        usable = len(buffer) - (len(buffer) % 2)
        return np.frombuffer(buffer[:usable], dtype="<i2").astype(np.int16), fallback_rate

    if isinstance(audio, np.ndarray) and audio.ndim > 1:
        audio = np.mean(audio, axis=1).astype(np.int16)

    return audio, src_rate


def transcode_upstream(payload: bytes) -> bytes | None:
    """Caller mu-law @ 8 kHz, forwarded as-is. Empty payloads yield nothing."""

    if not payload:
        return None
    return payload


def transcode_downstream(buffer: bytes | None, *, fallback_rate: int) -> bytes | None:
    """Agent LINEAR16 audio to mu-law @ 8 kHz, or None when there is nothing to play."""

    if not buffer:
        return None

    pcm, src_rate = decode_linear16(buffer, fallback_rate=fallback_rate)
    pcm8k = pcm16_resample(pcm, src_rate, TELEPHONY_SAMPLE_RATE)
    ulaw = ulaw_encode(pcm8k)
    if not ulaw:
        LOGGER.debug("Agent audio (%d bytes) produced no telephony samples", len(buffer))
        return None
    return ulaw
