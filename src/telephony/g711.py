"""G.711 mu-law companding.

Only ``ulaw_encode`` is on the call path; caller audio goes to the agent as
mu-law unchanged. ``ulaw_decode`` is kept for round-trip checks of the encoder.
"""

from __future__ import annotations

import numpy as np

# G.711 mu-law companding constants for 16-bit linear input.
ULAW_BIAS = 0x84
ULAW_CLIP = 32635


def ulaw_decode(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to PCM16 int16 array."""

    data = np.frombuffer(ulaw_bytes, dtype=np.uint8)

    mu = np.bitwise_not(data)
    sign = np.bitwise_and(mu, 0x80)
    exponent = np.right_shift(np.bitwise_and(mu, 0x70), 4).astype(np.int32)
    mantissa = np.bitwise_and(mu, 0x0F).astype(np.int32)

    magnitude = ((mantissa << 3) + ULAW_BIAS) << exponent
    pcm = magnitude - ULAW_BIAS
    pcm = np.where(sign != 0, -pcm, pcm)

    return pcm.astype(np.int16)


def ulaw_encode(pcm16: np.ndarray) -> bytes:
    """Encode PCM16 int16 array to G.711 mu-law bytes.

    This is a vectorized mu-law encoder suitable for realtime packetization.
    """

    if pcm16.size == 0:
        return b""

    x = pcm16.astype(np.int32)
    sign = (x < 0).astype(np.int32)
    x = np.abs(x)

    x = np.minimum(x, ULAW_CLIP)
    x = x + ULAW_BIAS

    # Exponent is the position of the highest set bit above bit 7.
    exponent = np.zeros_like(x)
    for exp in range(8):
        exponent = np.where(x >= (1 << (exp + 7)), exp, exponent)

    mantissa = (x >> (exponent + 3)) & 0x0F

    ulaw = np.bitwise_not((sign << 7) | (exponent << 4) | mantissa).astype(np.uint8)
    return ulaw.tobytes()
