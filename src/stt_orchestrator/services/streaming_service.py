"""
Сервис потокового распознавания (внешняя граница ядра).

Поток данных:
add_audio_data -> AudioChunkBuffer -> (чанк готов) -> задача на чанк ->
ProviderManager.transcribe -> уверенность -> очередь порядка -> TranscriptAggregator

Гарантии:
- буферизация следующего чанка не ждёт распознавания текущего
- агрегатор получает результаты строго по sequence_id; чанк, который не успел
  за ordering_timeout_sec (или упал), становится разрывом
- stop_streaming отдаёт недобранный остаток как последний чанк и дожидается
  всех начатых распознаваний
- ошибки операций записываются в ErrorTracker до того, как уйдут вызывающему
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager

from stt_orchestrator.audio.buffer import AudioBufferOptions, AudioChunkBuffer
from stt_orchestrator.audio.quality import is_silence
from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import NotFoundError, NotStreamingError, SessionStateError
from stt_orchestrator.common.events import EventChannel, Handler
from stt_orchestrator.common.ids import new_segment_id
from stt_orchestrator.common.logging import get_project_logger
from stt_orchestrator.common.metrics import ORDERING_GAPS_TOTAL, track_stage_latency
from stt_orchestrator.common.time import wall_clock
from stt_orchestrator.contracts.events import StreamingStatusEvent
from stt_orchestrator.domain.enums import ProviderType
from stt_orchestrator.domain.models import (
    AggregatorSession,
    AudioChunk,
    ProviderStatus,
    STTErrorRecord,
    TranscriptionResult,
    TranscriptSegment,
)
from stt_orchestrator.processing.aggregation import AggregatedTranscript
from stt_orchestrator.services.error_tracker import ErrorStats, ErrorTracker
from stt_orchestrator.services.ordering import SequenceReorderQueue
from stt_orchestrator.services.profile_store import ProfileStore, STTProfile
from stt_orchestrator.services.provider_manager import ProviderManager
from stt_orchestrator.services.transcript_aggregator import TranscriptAggregator
from stt_orchestrator.stt.base import confidence_from_result
from stt_orchestrator.stt.config import EngineConfig, TranscriptionOptions

log = get_project_logger()


def build_segment(chunk: AudioChunk, result: TranscriptionResult) -> TranscriptSegment:
    """
    Один сегмент транскрипта на чанк: время чанка, уверенность по avg_log_prob.
    """
    speakers = {s.speaker for s in result.segments if s.speaker}
    return TranscriptSegment(
        id=new_segment_id(),
        start_time=chunk.start_time,
        end_time=chunk.end_time,
        text=result.text,
        confidence=confidence_from_result(result),
        is_final=result.is_final,
        timestamp=wall_clock(),
        speaker_id=speakers.pop() if len(speakers) == 1 else None,
        language=result.language,
        sequence_id=chunk.sequence_id,
    )


def buffer_options_from_settings() -> AudioBufferOptions:
    s = get_settings()
    return AudioBufferOptions(
        sample_rate=s.audio_sample_rate,
        channels=s.audio_channels,
        bit_depth=s.audio_bit_depth,
        chunk_duration=s.audio_chunk_duration_sec,
        overlap_duration=s.audio_overlap_duration_sec,
    )


class StreamingTranscriptionService:
    def __init__(
        self,
        *,
        manager: ProviderManager,
        store: ProfileStore,
        tracker: ErrorTracker,
        aggregator: TranscriptAggregator,
        events: EventChannel,
        buffer_options: AudioBufferOptions | None = None,
        ordering_timeout_sec: float | None = None,
        skip_silent_chunks: bool | None = None,
    ) -> None:
        s = get_settings()
        self.manager = manager
        self.store = store
        self.tracker = tracker
        self.aggregator = aggregator
        self.events = events
        self.ordering_timeout_sec = (
            ordering_timeout_sec if ordering_timeout_sec is not None else s.ordering_timeout_sec
        )
        self.skip_silent_chunks = (
            skip_silent_chunks if skip_silent_chunks is not None else s.audio_skip_silent_chunks
        )

        self.buffer = AudioChunkBuffer(buffer_options or buffer_options_from_settings())
        self.buffer.on_chunk(self._on_chunk)
        self._ordering = SequenceReorderQueue()
        self._options = TranscriptionOptions()
        self._streaming = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._timers: dict[int, asyncio.TimerHandle] = {}

    @classmethod
    def from_settings(
        cls,
        *,
        profiles_path: str | None = None,
        default_provider: ProviderType | None = None,
        **kwargs,
    ) -> StreamingTranscriptionService:
        """
        Сборка всех компонентов: канал событий, журнал ошибок, профили, менеджер.
        Без текущего профиля движок стартует с провайдером по умолчанию.
        """
        s = get_settings()
        events = EventChannel()
        tracker = ErrorTracker(events=events)
        store = ProfileStore.open(profiles_path)

        current = store.current()
        if current is not None:
            engine = current.engine_config
        else:
            engine = EngineConfig(
                default_provider=ProviderType(default_provider or s.stt_default_provider)
            )
        manager = ProviderManager(engine, tracker=tracker, events=events)
        store.manager = manager
        aggregator = TranscriptAggregator(events=events)
        return cls(
            manager=manager,
            store=store,
            tracker=tracker,
            aggregator=aggregator,
            events=events,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Общие
    # -------------------------------------------------------------------------
    @contextmanager
    def _recorded(self, operation: str) -> Iterator[None]:
        try:
            yield
        except Exception as e:
            self.tracker.capture(e, operation=operation)
            raise

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def options(self) -> TranscriptionOptions:
        return self._options

    def subscribe(self, handler: Handler, event_type: str | None = None):
        return self.events.subscribe(handler, event_type)

    def _publish_status(self) -> None:
        current = self.manager.get_current_provider()
        self.events.publish(
            StreamingStatusEvent(
                is_streaming=self._streaming, provider=current.value if current else None
            )
        )

    # -------------------------------------------------------------------------
    # Управление стримингом
    # -------------------------------------------------------------------------
    async def start_streaming(
        self, options: TranscriptionOptions | dict | None = None
    ) -> AggregatorSession:
        with self._recorded("start_streaming"):
            if self._streaming:
                raise SessionStateError("Стриминг уже запущен")

            profile = self.store.current()
            base = profile.default_options if profile is not None else TranscriptionOptions()
            opts = base.merged(options)

            await self.manager.start_streaming()
            self._loop = asyncio.get_running_loop()
            self._options = opts
            self.aggregator.confidence_threshold = opts.confidence_threshold
            self._ordering.reset()
            session = self.aggregator.start_session()
            self.buffer.start()
            self._streaming = True

        log.info(
            "streaming_started",
            extra={
                "payload": {
                    "session_id": session.id,
                    "provider": self.manager.get_current_provider().value,
                    "chunk_size": self.buffer.chunk_size,
                }
            },
        )
        self._publish_status()
        return session

    async def stop_streaming(self) -> AggregatedTranscript:
        with self._recorded("stop_streaming"):
            if not self._streaming:
                raise NotStreamingError()
            self._streaming = False

            self.buffer.flush()
            self.buffer.stop()
            # колбэки из других потоков могли успеть поставить задачи в цикл
            await asyncio.sleep(0)
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

            await self.manager.stop_streaming()
            transcript = self.aggregator.stop_session()

        log.info(
            "streaming_stopped",
            extra={
                "payload": {
                    "session_id": transcript.id,
                    "segments": len(self.aggregator.segments()),
                    "pending": self._ordering.pending,
                }
            },
        )
        self._publish_status()
        return transcript

    def add_audio_data(self, data: bytes) -> None:
        """
        Вне стриминга байты молча сбрасываются.
        Можно вызывать из потока захвата аудио.
        """
        self.buffer.add_audio_data(data)

    def buffer_info(self) -> dict:
        return self.buffer.buffer_info()

    # -------------------------------------------------------------------------
    # Обработка чанков
    # -------------------------------------------------------------------------
    def _on_chunk(self, chunk: AudioChunk) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn(chunk)
        else:
            loop.call_soon_threadsafe(self._spawn, chunk)

    def _spawn(self, chunk: AudioChunk) -> None:
        seq = chunk.sequence_id
        loop = asyncio.get_running_loop()
        self._timers[seq] = loop.call_later(self.ordering_timeout_sec, self._expire, seq)
        task = loop.create_task(self._process_chunk(chunk), name=f"stt-chunk-{seq}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _expire(self, seq: int) -> None:
        self._timers.pop(seq, None)
        log.warning(
            "chunk_ordering_timeout",
            extra={"payload": {"seq": seq, "timeout_sec": self.ordering_timeout_sec}},
        )
        self._deliver(seq, None, reason="timeout")

    async def _process_chunk(self, chunk: AudioChunk) -> None:
        seq = chunk.sequence_id
        try:
            if self.skip_silent_chunks and is_silence(chunk.data):
                self._deliver(seq, None, reason="silence")
                return
            try:
                with track_stage_latency("transcribe"):
                    result = await self.manager.transcribe(chunk, self._options)
            except Exception as e:
                # ошибка уже в журнале (capture не дублирует); чанк становится разрывом
                self.tracker.capture(e, operation="process_chunk")
                log.warning(
                    "chunk_failed",
                    extra={"payload": {"seq": seq, "err": str(e)[:300]}},
                )
                self._deliver(seq, None, reason="error")
                return
            self._deliver(seq, build_segment(chunk, result))
        finally:
            timer = self._timers.pop(seq, None)
            if timer is not None:
                timer.cancel()

    def _deliver(
        self, seq: int, segment: TranscriptSegment | None, *, reason: str | None = None
    ) -> None:
        if seq < self._ordering.next_seq:
            log.info("chunk_result_late", extra={"payload": {"seq": seq}})
            return
        if segment is None:
            ORDERING_GAPS_TOTAL.labels(reason=reason or "unknown").inc()
            log.info("chunk_gap", extra={"payload": {"seq": seq, "reason": reason}})

        for _, seg in self._ordering.complete(seq, segment):
            if seg is None or not self.aggregator.is_active:
                continue
            with track_stage_latency("aggregate"):
                self.aggregator.ingest(seg)

    # -------------------------------------------------------------------------
    # Провайдеры
    # -------------------------------------------------------------------------
    async def initialize_provider(self, kind: ProviderType) -> ProviderStatus:
        return await self.manager.initialize_provider(kind)

    async def switch_provider(self, kind: ProviderType) -> ProviderStatus:
        status = await self.manager.switch_provider(kind)
        self._publish_status()
        return status

    def get_provider_status(self) -> list[ProviderStatus]:
        return self.manager.get_provider_status()

    def get_current_provider(self) -> ProviderType | None:
        return self.manager.get_current_provider()

    # -------------------------------------------------------------------------
    # Профили
    # -------------------------------------------------------------------------
    def create_profile(
        self,
        name: str,
        engine_config: EngineConfig | dict,
        default_options: TranscriptionOptions | dict | None = None,
        description: str | None = None,
    ) -> STTProfile:
        with self._recorded("create_profile"):
            return self.store.create(name, engine_config, default_options, description)

    def update_profile(self, profile_id: str, **changes) -> STTProfile:
        with self._recorded("update_profile"):
            return self.store.update(profile_id, **changes)

    def delete_profile(self, profile_id: str) -> None:
        with self._recorded("delete_profile"):
            self.store.delete(profile_id)

    def duplicate_profile(self, profile_id: str, name: str | None = None) -> STTProfile:
        with self._recorded("duplicate_profile"):
            return self.store.duplicate(profile_id, name)

    async def switch_profile(self, profile_id: str) -> STTProfile:
        """
        Применяет профиль: движок (через ProviderManager) и опции распознавания.
        Во время стриминга провайдер переключается на лету.
        """
        with self._recorded("switch_profile"):
            profile = await self.store.switch(profile_id)
        self._options = profile.default_options
        self.aggregator.confidence_threshold = profile.default_options.confidence_threshold
        if self._streaming:
            self._publish_status()
        return profile

    def export_profile(self, profile_id: str) -> str:
        with self._recorded("export_profile"):
            return self.store.export(profile_id)

    def import_profile(self, serialized: str) -> STTProfile:
        with self._recorded("import_profile"):
            return self.store.import_profile(serialized)

    def list_profiles(self) -> list[STTProfile]:
        return self.store.list_profiles()

    def current_profile(self) -> STTProfile | None:
        return self.store.current()

    # -------------------------------------------------------------------------
    # Ошибки
    # -------------------------------------------------------------------------
    def get_error_stats(self) -> ErrorStats:
        return self.tracker.stats()

    def get_recent_errors(self, count: int = 10) -> list[STTErrorRecord]:
        return self.tracker.recent(count)

    def resolve_error(self, error_id: str) -> None:
        if not self.tracker.resolve(error_id):
            raise NotFoundError("Ошибка не найдена в журнале", details={"error_id": error_id})

    def clear_errors(self) -> None:
        self.tracker.clear()

    async def close(self) -> None:
        if self._streaming:
            await self.stop_streaming()
        await self.manager.close()
