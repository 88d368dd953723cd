from __future__ import annotations

import pytest

from stt_orchestrator.audio.buffer import AudioBufferOptions, AudioChunkBuffer, calculate_chunk_size


def _buffer(**kw):
    chunks = []
    opts = AudioBufferOptions(sample_rate=1000, channels=1, bit_depth=16, chunk_duration=1.0, **kw)
    return AudioChunkBuffer(opts, chunks.append), chunks


def test_chunk_size_for_16k_mono_16bit_5s() -> None:
    assert (
        calculate_chunk_size(sample_rate=16000, channels=1, bit_depth=16, chunk_duration=5)
        == 160000
    )
    assert AudioChunkBuffer(AudioBufferOptions()).chunk_size == 160000


def test_full_chunk_drains_whole_accumulator() -> None:
    buf, chunks = _buffer()
    buf.start()

    buf.add_audio_data(b"\x01" * 1500)
    assert chunks == []

    buf.add_audio_data(b"\x02" * 1000)
    assert len(chunks) == 1
    assert chunks[0].sequence_id == 1
    assert len(chunks[0].data) == 2500
    assert chunks[0].end_time >= chunks[0].start_time
    assert buf.buffer_info()["size"] == 0


def test_overlap_keeps_tail_for_next_chunk() -> None:
    buf, chunks = _buffer(overlap_duration=0.25)
    assert buf.overlap_size == 500
    buf.start()

    first = bytes(range(200)) * 10
    buf.add_audio_data(first)
    assert buf.buffer_info()["size"] == 500

    buf.add_audio_data(b"\xff" * 1500)
    assert [c.sequence_id for c in chunks] == [1, 2]
    assert chunks[1].data[:500] == first[-500:]
    assert len(chunks[1].data) == 2000


def test_flush_emits_remainder_once() -> None:
    buf, chunks = _buffer()
    buf.start()
    buf.add_audio_data(b"\x05" * 300)

    chunk = buf.flush()
    assert chunk is not None and chunk.is_flush
    assert len(chunk.data) == 300
    assert buf.flush() is None
    assert len(chunks) == 1


def test_flush_after_overlap_only_is_noop() -> None:
    buf, chunks = _buffer(overlap_duration=0.5)
    buf.start()
    buf.add_audio_data(b"\x01" * 2000)
    assert len(chunks) == 1

    assert buf.flush() is None
    assert len(chunks) == 1


def test_bytes_dropped_when_not_streaming() -> None:
    buf, chunks = _buffer()
    buf.add_audio_data(b"\x01" * 5000)
    assert chunks == []
    assert buf.buffer_info()["size"] == 0

    buf.start()
    buf.stop()
    buf.add_audio_data(b"\x01" * 5000)
    assert chunks == []


def test_sequence_restarts_on_start() -> None:
    buf, chunks = _buffer()
    buf.start()
    buf.add_audio_data(b"\x01" * 2000)
    buf.stop()
    buf.start()
    buf.add_audio_data(b"\x01" * 2000)
    assert [c.sequence_id for c in chunks] == [1, 1]


def test_invalid_overlap_rejected() -> None:
    with pytest.raises(ValueError):
        AudioBufferOptions(chunk_duration=1.0, overlap_duration=1.0)
