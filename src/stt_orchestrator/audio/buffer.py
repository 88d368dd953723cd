"""
Буфер аудио: поток байтов -> чанки фиксированной длительности.

Что делает:
- копит PCM-байты от одного писателя (захват аудио)
- при накоплении chunk_size байт отдаёт весь накопитель одним AudioChunk
- опционально оставляет хвост overlap_duration для следующего чанка
- flush() отдаёт недобранный остаток (используется при остановке)

Важно:
- вне стриминга add_audio_data молча сбрасывает байты (это не ошибка)
- мутации сериализованы threading.Lock, колбэк вызывается вне блокировки
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from dataclasses import dataclass

from stt_orchestrator.common.logging import get_project_logger
from stt_orchestrator.common.metrics import AUDIO_BYTES_DROPPED_TOTAL, AUDIO_CHUNKS_TOTAL
from stt_orchestrator.common.time import wall_clock
from stt_orchestrator.domain.models import AudioChunk

log = get_project_logger()

ChunkHandler = Callable[[AudioChunk], None]


@dataclass
class AudioBufferOptions:
    sample_rate: int = 16000
    channels: int = 1
    bit_depth: int = 16
    chunk_duration: float = 5.0  # секунды
    overlap_duration: float = 0.0  # секунды, 0: без перекрытия

    def __post_init__(self) -> None:
        if self.sample_rate <= 0 or self.channels <= 0:
            raise ValueError("sample_rate and channels must be positive")
        if self.bit_depth <= 0 or self.bit_depth % 8 != 0:
            raise ValueError("bit_depth must be a positive multiple of 8")
        if self.chunk_duration <= 0:
            raise ValueError("chunk_duration must be positive")
        if self.overlap_duration < 0 or self.overlap_duration >= self.chunk_duration:
            raise ValueError("overlap_duration must be in [0, chunk_duration)")

    @property
    def frame_size(self) -> int:
        return self.channels * (self.bit_depth // 8)


def calculate_chunk_size(
    *, sample_rate: int, channels: int, bit_depth: int, chunk_duration: float
) -> int:
    """
    chunk_size = floor(sample_rate * channels * bytes_per_sample * chunk_duration)
    """
    return int(math.floor(sample_rate * channels * (bit_depth / 8) * chunk_duration))


class AudioChunkBuffer:
    def __init__(
        self,
        options: AudioBufferOptions | None = None,
        on_chunk: ChunkHandler | None = None,
    ) -> None:
        self.options = options or AudioBufferOptions()
        self._lock = threading.Lock()
        self._buf = bytearray()
        # сколько байт в накопителе ещё не было отдано ни в одном чанке
        self._fresh = 0
        self._streaming = False
        self._sequence = 0
        self._chunk_started_at = 0.0
        self._handlers: list[ChunkHandler] = []
        if on_chunk is not None:
            self._handlers.append(on_chunk)

    # -------------------------------------------------------------------------
    # Размеры
    # -------------------------------------------------------------------------
    @property
    def chunk_size(self) -> int:
        o = self.options
        return calculate_chunk_size(
            sample_rate=o.sample_rate,
            channels=o.channels,
            bit_depth=o.bit_depth,
            chunk_duration=o.chunk_duration,
        )

    @property
    def overlap_size(self) -> int:
        o = self.options
        if o.overlap_duration <= 0:
            return 0
        raw = calculate_chunk_size(
            sample_rate=o.sample_rate,
            channels=o.channels,
            bit_depth=o.bit_depth,
            chunk_duration=o.overlap_duration,
        )
        # выравниваем по кадру, чтобы не разрезать сэмпл
        return raw - raw % o.frame_size

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    # -------------------------------------------------------------------------
    # Подписка
    # -------------------------------------------------------------------------
    def on_chunk(self, handler: ChunkHandler) -> None:
        self._handlers.append(handler)

    # -------------------------------------------------------------------------
    # Жизненный цикл
    # -------------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            self._buf.clear()
            self._fresh = 0
            self._sequence = 0
            self._chunk_started_at = wall_clock()
            self._streaming = True

    def stop(self) -> None:
        """
        Переводит буфер в не-стриминг. Остаток не отдаётся: для этого flush().
        """
        with self._lock:
            self._streaming = False
            self._buf.clear()
            self._fresh = 0

    def clear(self) -> None:
        with self._lock:
            self._buf.clear()
            self._fresh = 0

    # -------------------------------------------------------------------------
    # Запись
    # -------------------------------------------------------------------------
    def add_audio_data(self, data: bytes) -> None:
        if not data:
            return

        chunk: AudioChunk | None = None
        with self._lock:
            if not self._streaming:
                AUDIO_BYTES_DROPPED_TOTAL.inc(len(data))
                return
            self._buf.extend(data)
            self._fresh += len(data)
            if len(self._buf) >= self.chunk_size:
                chunk = self._drain_locked(is_flush=False)

        if chunk is not None:
            self._emit(chunk)

    def flush(self) -> AudioChunk | None:
        """
        Отдаёт остаток ниже порога. Пустой буфер (или только уже отданный overlap): no-op.
        """
        with self._lock:
            if self._fresh <= 0:
                return None
            chunk = self._drain_locked(is_flush=True)

        self._emit(chunk)
        return chunk

    def _drain_locked(self, *, is_flush: bool) -> AudioChunk:
        now = wall_clock()
        self._sequence += 1
        o = self.options
        chunk = AudioChunk(
            sequence_id=self._sequence,
            data=bytes(self._buf),
            start_time=self._chunk_started_at,
            end_time=now,
            sample_rate=o.sample_rate,
            channels=o.channels,
            bit_depth=o.bit_depth,
            is_flush=is_flush,
        )

        keep = 0 if is_flush else min(self.overlap_size, len(self._buf))
        if keep > 0:
            tail = bytes(self._buf[-keep:])
            self._buf.clear()
            self._buf.extend(tail)
        else:
            self._buf.clear()
        self._fresh = 0
        self._chunk_started_at = now
        return chunk

    def _emit(self, chunk: AudioChunk) -> None:
        AUDIO_CHUNKS_TOTAL.labels(kind="flush" if chunk.is_flush else "full").inc()
        log.debug(
            "audio_chunk_ready",
            extra={
                "payload": {
                    "seq": chunk.sequence_id,
                    "bytes": len(chunk.data),
                    "flush": chunk.is_flush,
                }
            },
        )
        for handler in list(self._handlers):
            handler(chunk)

    # -------------------------------------------------------------------------
    # Состояние
    # -------------------------------------------------------------------------
    def buffer_info(self) -> dict:
        with self._lock:
            size = len(self._buf)
            seq = self._sequence
            streaming = self._streaming
        chunk_size = self.chunk_size
        return {
            "size": size,
            "chunk_size": chunk_size,
            "sequence": seq,
            "is_streaming": streaming,
            "utilization": (size / chunk_size * 100.0) if chunk_size else 0.0,
        }
