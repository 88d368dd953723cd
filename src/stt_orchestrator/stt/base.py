"""
Базовый интерфейс STT-провайдера.

Назначение:
- единый контракт для всех провайдеров (локальная модель, удалённый сервис)
- общая часть жизненного цикла: initialize / start_streaming / stop_streaming
- единая формула уверенности по avg_log_prob, независимо от провайдера

Контракт transcribe синхронный: ProviderManager сам уносит вызов в поток
(asyncio.to_thread) и ограничивает его connection_timeout.
"""

from __future__ import annotations

import math
import threading
from abc import ABC, abstractmethod

from stt_orchestrator.common.errors import NotStreamingError, ProviderError
from stt_orchestrator.common.logging import get_provider_logger
from stt_orchestrator.domain.enums import ProviderState, ProviderType
from stt_orchestrator.domain.models import AudioChunk, ProviderStatus, TranscriptionResult
from stt_orchestrator.stt.config import TranscriptionOptions

log = get_provider_logger()


def normalize_confidence(avg_log_prob: float) -> float:
    """
    clamp((avg_log_prob + 1) / 2, 0, 1); NaN -> 0.
    """
    if math.isnan(avg_log_prob):
        return 0.0
    return max(0.0, min(1.0, (avg_log_prob + 1.0) / 2.0))


def confidence_from_result(result: TranscriptionResult) -> float:
    if not result.segments:
        return 0.0
    avg = sum(s.avg_log_prob for s in result.segments) / len(result.segments)
    return normalize_confidence(avg)


class STTProvider(ABC):
    """
    Базовый провайдер: хранит флаги инициализации/стриминга и последнюю ошибку.
    Наследники реализуют _do_initialize() и _do_transcribe().
    """

    provider_type: ProviderType
    display_name: str = "STT"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._initialized = False
        self._streaming = False
        self._last_error: str | None = None

    # -------------------------------------------------------------------------
    # Жизненный цикл
    # -------------------------------------------------------------------------
    def initialize(self) -> None:
        """
        Идемпотентно: повторный вызов на инициализированном провайдере ничего не делает.
        """
        with self._lock:
            if self._initialized:
                return
        try:
            self._do_initialize()
        except ProviderError as e:
            self._last_error = e.message
            raise
        with self._lock:
            self._initialized = True
            self._last_error = None
        log.info("provider_initialized", extra={"payload": {"provider": self.provider_type.value}})

    def start_streaming(self) -> None:
        with self._lock:
            if not self._initialized:
                raise ProviderError(
                    "unavailable",
                    "Провайдер не инициализирован",
                    provider=self.provider_type.value,
                )
            self._streaming = True

    def stop_streaming(self) -> None:
        with self._lock:
            self._streaming = False

    def close(self) -> None:
        """
        Освобождает ресурсы (модель/сессию). После close() нужен новый initialize().
        """
        with self._lock:
            self._streaming = False
            self._initialized = False
        self._do_close()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    # -------------------------------------------------------------------------
    # Распознавание
    # -------------------------------------------------------------------------
    def transcribe(
        self, chunk: AudioChunk, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        if not self._streaming:
            raise NotStreamingError(
                "Провайдер не принимает чанки вне стриминга",
                details={"provider": self.provider_type.value, "seq": chunk.sequence_id},
            )
        try:
            return self._do_transcribe(chunk, options or TranscriptionOptions())
        except ProviderError as e:
            if e.provider is None:
                e.provider = self.provider_type.value
            self._last_error = e.message
            raise

    def get_status(self) -> ProviderStatus:
        if self._streaming:
            state = ProviderState.streaming
        elif self._initialized:
            state = ProviderState.ready
        else:
            state = ProviderState.uninitialized
        return ProviderStatus(
            type=self.provider_type,
            name=self.display_name,
            is_initialized=self._initialized,
            is_streaming=self._streaming,
            is_available=self._initialized,
            state=state,
            last_error=self._last_error,
        )

    # -------------------------------------------------------------------------
    # Реализация провайдера
    # -------------------------------------------------------------------------
    @abstractmethod
    def _do_initialize(self) -> None: ...

    @abstractmethod
    def _do_transcribe(
        self, chunk: AudioChunk, options: TranscriptionOptions
    ) -> TranscriptionResult: ...

    def _do_close(self) -> None:
        return None
