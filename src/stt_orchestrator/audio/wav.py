"""
Временные WAV-файлы для провайдеров, которым нужен файл на диске.

Гарантия: файл удаляется на любом пути выхода (успех, исключение, таймаут, отмена).
"""

from __future__ import annotations

import os
import tempfile
import wave
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from stt_orchestrator.common.logging import get_project_logger
from stt_orchestrator.domain.models import AudioChunk

log = get_project_logger()


def write_wav(path: str | Path, chunk: AudioChunk) -> None:
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(chunk.channels)
        wf.setsampwidth(chunk.bit_depth // 8)
        wf.setframerate(chunk.sample_rate)
        wf.writeframes(chunk.data)


@contextmanager
def temp_wav_file(chunk: AudioChunk, temp_dir: str | Path | None = None) -> Iterator[Path]:
    if temp_dir is not None:
        Path(temp_dir).mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(
        prefix=f"chunk_{chunk.sequence_id}_",
        suffix=".wav",
        dir=str(temp_dir) if temp_dir is not None else None,
    )
    os.close(fd)
    path = Path(name)
    try:
        write_wav(path, chunk)
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            log.warning(
                "temp_chunk_cleanup_failed",
                extra={"payload": {"path": str(path), "err": str(e)[:200]}},
            )
