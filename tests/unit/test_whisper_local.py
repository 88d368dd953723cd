from __future__ import annotations

import pytest

pytest.importorskip("faster_whisper")
np = pytest.importorskip("numpy")

from stt_orchestrator.common.errors import ProviderError  # noqa: E402
from stt_orchestrator.domain.models import AudioChunk  # noqa: E402
from stt_orchestrator.stt.whisper_local import (  # noqa: E402
    WhisperLocalProvider,
    _pcm16_to_float32,
)


def test_pcm16_fast_path_scales_to_unit_range() -> None:
    pcm = np.array([0, 16384, -32768, 32767], dtype="<i2").tobytes()

    out = _pcm16_to_float32(pcm, sample_rate=16000, channels=1)

    assert out.dtype == np.float32
    assert out.tolist() == pytest.approx([0.0, 0.5, -1.0, 32767 / 32768])


def test_pcm16_drops_partial_frame() -> None:
    assert _pcm16_to_float32(b"\x01", sample_rate=16000, channels=1).size == 0
    assert _pcm16_to_float32(b"\x00\x00\x01", sample_rate=16000, channels=1).size == 1


def test_pcm16_resamples_8k_to_16k() -> None:
    pcm = np.zeros(8000, dtype="<i2").tobytes()

    out = _pcm16_to_float32(pcm, sample_rate=8000, channels=1)

    assert out.dtype == np.float32
    assert abs(out.size - 16000) <= 64


def test_non_16bit_chunk_is_decode_failure() -> None:
    p = WhisperLocalProvider()
    p._initialized = True
    p._streaming = True
    p.model = object()
    chunk = AudioChunk(
        sequence_id=1, data=b"\x00" * 300, start_time=0, end_time=0.1, bit_depth=24
    )

    with pytest.raises(ProviderError) as ei:
        p.transcribe(chunk)
    assert ei.value.kind.value == "decode_failure"
