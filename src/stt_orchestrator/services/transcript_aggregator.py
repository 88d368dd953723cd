"""
Агрегатор транскрипта.

Назначение:
- жизненный цикл сессии (ровно одна активная)
- приём сегментов в порядке чанков и замена промежуточных сегментов
  финальными (на том же месте в списке)
- инкрементальная статистика по говорящим (только финальные сегменты)
- пакетная сводка каждые batch_size сегментов

Правила замены:
- сегмент с тем же диапазоном времени, что у существующего нефинального,
  встаёт на его место
- финальный сегмент не заменяется никогда; точный дубль финального отбрасывается,
  запоздавший промежуточный для того же диапазона тоже
"""

from __future__ import annotations

import threading
from dataclasses import replace

from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import SessionStateError
from stt_orchestrator.common.events import EventChannel
from stt_orchestrator.common.ids import new_segment_id, new_session_id
from stt_orchestrator.common.logging import get_project_logger
from stt_orchestrator.common.metrics import SEGMENTS_INGESTED_TOTAL
from stt_orchestrator.common.time import wall_clock
from stt_orchestrator.contracts.events import (
    BatchProcessedEvent,
    SegmentAddedEvent,
    SessionStartedEvent,
    SessionStoppedEvent,
)
from stt_orchestrator.domain.models import AggregatorSession, Speaker, TranscriptSegment
from stt_orchestrator.processing.aggregation import (
    AggregatedTranscript,
    build_aggregated_transcript,
    normalize_text,
)
from stt_orchestrator.processing.speakers import detect_speaker, new_speaker, update_speaker_stats

log = get_project_logger()


class TranscriptAggregator:
    def __init__(
        self,
        *,
        batch_size: int | None = None,
        max_segment_gap_sec: float | None = None,
        min_segment_duration_sec: float | None = None,
        confidence_threshold: float = 0.0,
        speaker_separation: bool | None = None,
        events: EventChannel | None = None,
    ) -> None:
        s = get_settings()
        self.batch_size = batch_size if batch_size is not None else s.aggregator_batch_size
        self.max_segment_gap_sec = (
            max_segment_gap_sec
            if max_segment_gap_sec is not None
            else s.aggregator_max_segment_gap_sec
        )
        self.min_segment_duration_sec = (
            min_segment_duration_sec
            if min_segment_duration_sec is not None
            else s.aggregator_min_segment_duration_sec
        )
        self.confidence_threshold = confidence_threshold
        self.speaker_separation = (
            speaker_separation
            if speaker_separation is not None
            else s.aggregator_speaker_separation
        )
        self.events = events

        self._lock = threading.RLock()
        self._session: AggregatorSession | None = None
        self._ids: set[str] = set()
        self._since_batch = 0
        self._latest: AggregatedTranscript | None = None

    # -------------------------------------------------------------------------
    # Сессия
    # -------------------------------------------------------------------------
    @property
    def session(self) -> AggregatorSession | None:
        """Текущая или последняя остановленная сессия."""
        return self._session

    @property
    def is_active(self) -> bool:
        return self._session is not None and self._session.is_active

    def start_session(self, session_id: str | None = None) -> AggregatorSession:
        with self._lock:
            if self.is_active:
                raise SessionStateError(
                    "Сессия уже активна", details={"session_id": self._session.id}
                )
            self._session = AggregatorSession(
                id=session_id or new_session_id(), is_active=True, started_at=wall_clock()
            )
            self._ids = set()
            self._since_batch = 0
            self._latest = None
            sess = self._session

        log.info("aggregator_session_started", extra={"payload": {"session_id": sess.id}})
        self._publish(SessionStartedEvent(session_id=sess.id, started_at=sess.started_at))
        return sess

    def stop_session(self) -> AggregatedTranscript:
        with self._lock:
            if not self.is_active:
                raise SessionStateError("Нет активной сессии")
            if self._since_batch:
                self.flush()
            sess = self._session
            sess.is_active = False
            sess.stopped_at = wall_clock()
            final = self.transcript()
            self._latest = final

        log.info(
            "aggregator_session_stopped",
            extra={
                "payload": {
                    "session_id": sess.id,
                    "segments": len(sess.segments),
                    "speakers": len(sess.speakers),
                }
            },
        )
        self._publish(
            SessionStoppedEvent(
                session_id=sess.id, stopped_at=sess.stopped_at, transcript=final.to_dict()
            )
        )
        return final

    # -------------------------------------------------------------------------
    # Приём сегментов
    # -------------------------------------------------------------------------
    def _find_same_range(self, segment: TranscriptSegment) -> int | None:
        segs = self._session.segments
        # совпадение почти всегда в хвосте: ищем с конца
        for idx in range(len(segs) - 1, -1, -1):
            if segs[idx].same_range(segment):
                return idx
        return None

    def _drop(self, segment: TranscriptSegment, reason: str) -> None:
        SEGMENTS_INGESTED_TOTAL.labels(final=str(segment.is_final).lower(), action="drop").inc()
        log.debug(
            "segment_dropped",
            extra={"payload": {"reason": reason, "seq": segment.sequence_id}},
        )

    def ingest(self, segment: TranscriptSegment) -> TranscriptSegment | None:
        """
        Принимает сегмент. Возвращает сохранённый сегмент или None, если он отброшен.
        """
        with self._lock:
            if not self.is_active:
                raise SessionStateError(
                    "Сегмент вне активной сессии", details={"seq": segment.sequence_id}
                )
            sess = self._session

            if segment.confidence < self.confidence_threshold:
                self._drop(segment, "low_confidence")
                return None
            if segment.duration < self.min_segment_duration_sec:
                self._drop(segment, "too_short")
                return None
            text = normalize_text(segment.text)
            if not text:
                self._drop(segment, "empty_text")
                return None

            seg = replace(
                segment,
                text=text,
                confidence=max(0.0, min(1.0, segment.confidence)),
            )
            if not seg.id or seg.id in self._ids:
                seg.id = new_segment_id()

            superseded: TranscriptSegment | None = None
            idx = self._find_same_range(seg)
            if idx is not None:
                existing = sess.segments[idx]
                if existing.is_final:
                    if not seg.is_final or existing.text == seg.text:
                        self._drop(seg, "final_exists")
                        return None
                    idx = None
                else:
                    superseded = existing

            if self.speaker_separation and not seg.speaker_id:
                history = sess.segments if idx is None else sess.segments[:idx]
                seg.speaker_id = detect_speaker(seg, history)

            if idx is None:
                sess.segments.append(seg)
                action = "append"
            else:
                sess.segments[idx] = seg
                self._ids.discard(superseded.id)
                action = "supersede"
            self._ids.add(seg.id)

            if seg.is_final and seg.speaker_id:
                speaker = sess.speakers.get(seg.speaker_id)
                if speaker is None:
                    speaker = new_speaker(seg.speaker_id)
                    sess.speakers[seg.speaker_id] = speaker
                update_speaker_stats(speaker, seg)

            self._since_batch += 1
            batch_due = self.batch_size > 0 and self._since_batch >= self.batch_size

        SEGMENTS_INGESTED_TOTAL.labels(final=str(seg.is_final).lower(), action=action).inc()
        self._publish(
            SegmentAddedEvent(
                session_id=sess.id,
                segment=seg.to_dict(),
                superseded_id=superseded.id if superseded is not None else None,
            )
        )
        if batch_due:
            self.flush()
        return seg

    def flush(self) -> AggregatedTranscript | None:
        """
        Пакетная сводка по текущей сессии (событие batchProcessed).
        """
        with self._lock:
            if self._session is None or not self._session.segments:
                return None
            self._since_batch = 0
            transcript = self.transcript()
            self._latest = transcript
            session_id = self._session.id

        self._publish(BatchProcessedEvent(session_id=session_id, transcript=transcript.to_dict()))
        return transcript

    # -------------------------------------------------------------------------
    # Чтение
    # -------------------------------------------------------------------------
    def segments(self) -> list[TranscriptSegment]:
        with self._lock:
            if self._session is None:
                return []
            return list(self._session.segments)

    def speakers(self) -> list[Speaker]:
        with self._lock:
            if self._session is None:
                return []
            return list(self._session.speakers.values())

    def transcript(self) -> AggregatedTranscript:
        with self._lock:
            if self._session is None:
                raise SessionStateError("Сессия ещё не начиналась")
            sess = self._session
            return build_aggregated_transcript(
                sess.id,
                sess.segments,
                max_gap_sec=self.max_segment_gap_sec,
                speaker_count=len(sess.speakers),
                started_at=sess.started_at,
            )

    @property
    def latest_transcript(self) -> AggregatedTranscript | None:
        return self._latest

    def _publish(self, event) -> None:
        if self.events is not None:
            self.events.publish(event)
