from __future__ import annotations

import numpy as np

from telephony.g711 import ulaw_decode, ulaw_encode


def test_ulaw_encode_decode_shape_and_types() -> None:
    # 20ms of 8kHz samples
    pcm = (np.sin(np.linspace(0, 2 * np.pi, 160, endpoint=False)) * 12000).astype(np.int16)

    ulaw = ulaw_encode(pcm)
    assert isinstance(ulaw, bytes | bytearray)
    assert len(ulaw) == pcm.size

    decoded = ulaw_decode(ulaw)
    assert decoded.dtype == np.int16
    assert decoded.shape == pcm.shape


def test_ulaw_silence_encodes_to_0xff_and_decodes_to_zero() -> None:
    ulaw = ulaw_encode(np.zeros(320, dtype=np.int16))
    assert ulaw == b"\xff" * 320
    assert int(np.max(np.abs(ulaw_decode(ulaw)))) == 0


def test_ulaw_known_code_points() -> None:
    # Full-scale positive and negative samples land on the extreme codes.
    assert ulaw_encode(np.array([32767, -32768], dtype=np.int16)) == b"\x80\x00"
    assert ulaw_decode(b"\x80\x00").tolist() == [32124, -32124]


def test_ulaw_round_trip_error_stays_within_quantization_step() -> None:
    pcm = (np.sin(np.linspace(0, 8 * np.pi, 800)) * 20000).astype(np.int16)
    decoded = ulaw_decode(ulaw_encode(pcm)).astype(np.int32)

    error = np.abs(decoded - pcm.astype(np.int32))
    # The largest mu-law segment is 1024 wide; half of that is the worst case.
    assert int(error.max()) <= 512


def test_ulaw_encode_empty_returns_empty_bytes() -> None:
    assert ulaw_encode(np.array([], dtype=np.int16)) == b""
    assert ulaw_decode(b"").size == 0
