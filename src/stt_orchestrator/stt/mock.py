from __future__ import annotations

import threading
import time

from stt_orchestrator.common.errors import ProviderError
from stt_orchestrator.domain.enums import ProviderType
from stt_orchestrator.domain.models import AudioChunk, ResultSegment, TranscriptionResult
from stt_orchestrator.stt.base import STTProvider
from stt_orchestrator.stt.config import MockProviderConfig, TranscriptionOptions


class MockSTTProvider(STTProvider):
    """Заглушка STT: возвращает предсказуемый текст для проверки пайплайна end-to-end."""

    provider_type = ProviderType.mock
    display_name = "Mock STT"

    def __init__(self, config: MockProviderConfig | None = None) -> None:
        super().__init__()
        self.config = config or MockProviderConfig()
        self._fail_left = self.config.fail_times
        self._calls_lock = threading.Lock()
        self.calls = 0

    def _do_initialize(self) -> None:
        if self.config.fail_on_initialize:
            raise ProviderError("unavailable", "mock: инициализация отключена конфигом")

    def _do_transcribe(
        self, chunk: AudioChunk, options: TranscriptionOptions
    ) -> TranscriptionResult:
        with self._calls_lock:
            self.calls += 1
            should_fail = self._fail_left > 0
            if should_fail:
                self._fail_left -= 1

        if self.config.latency_ms:
            time.sleep(self.config.latency_ms / 1000.0)
        if should_fail:
            raise ProviderError(self.config.fail_kind, "mock: сбой по сценарию")

        text = f"{self.config.text} seq={chunk.sequence_id} bytes={len(chunk.data)}"
        return TranscriptionResult(
            text=text,
            segments=(
                ResultSegment(
                    text=text,
                    start_offset=0.0,
                    end_offset=chunk.duration,
                    avg_log_prob=self.config.avg_log_prob,
                ),
            ),
            language=options.language or self.config.language,
            is_final=True,
            provider=self.provider_type,
        )
