"""
Агрегация сегментов в единый транскрипт.

Назначение:
- нормализация текста сегмента
- склейка соседних сегментов одного говорящего (пауза <= max_gap)
- сводка: длительность, число слов, средняя уверенность, языки
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from stt_orchestrator.domain.models import TranscriptSegment

_WS_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


@dataclass
class AggregatedTranscript:
    id: str
    segments: list[TranscriptSegment] = field(default_factory=list)
    total_duration: float = 0.0
    start_time: float = 0.0
    end_time: float = 0.0
    speaker_count: int = 0
    word_count: int = 0
    average_confidence: float = 0.0
    languages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "segments": [s.to_dict() for s in self.segments],
            "total_duration": self.total_duration,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "speaker_count": self.speaker_count,
            "word_count": self.word_count,
            "average_confidence": self.average_confidence,
            "languages": list(self.languages),
        }


def merge_segments(
    segments: Sequence[TranscriptSegment], *, max_gap_sec: float
) -> list[TranscriptSegment]:
    """
    Соседние сегменты одного говорящего с паузой <= max_gap_sec склеиваются.
    Исходные сегменты не мутируются.
    """
    if not segments:
        return []

    merged: list[TranscriptSegment] = []
    current = replace(segments[0])
    for nxt in segments[1:]:
        gap = nxt.start_time - current.end_time
        if current.speaker_id == nxt.speaker_id and gap <= max_gap_sec:
            current.text = f"{current.text} {nxt.text}".strip()
            current.end_time = max(current.end_time, nxt.end_time)
            current.confidence = (current.confidence + nxt.confidence) / 2
            current.is_final = current.is_final and nxt.is_final
        else:
            merged.append(current)
            current = replace(nxt)
    merged.append(current)
    return merged


def word_count(segments: Iterable[TranscriptSegment]) -> int:
    return sum(len(s.text.split()) for s in segments)


def build_aggregated_transcript(
    session_id: str,
    segments: Sequence[TranscriptSegment],
    *,
    max_gap_sec: float,
    speaker_count: int,
    started_at: float,
) -> AggregatedTranscript:
    ordered = sorted(segments, key=lambda s: s.start_time)
    merged = merge_segments(ordered, max_gap_sec=max_gap_sec)
    if not merged:
        return AggregatedTranscript(
            id=session_id, start_time=started_at, end_time=started_at, speaker_count=speaker_count
        )

    languages: list[str] = []
    for s in merged:
        if s.language and s.language not in languages:
            languages.append(s.language)

    start, end = merged[0].start_time, merged[-1].end_time
    return AggregatedTranscript(
        id=session_id,
        segments=merged,
        total_duration=end - start,
        start_time=start,
        end_time=end,
        speaker_count=speaker_count,
        word_count=word_count(merged),
        average_confidence=sum(s.confidence for s in merged) / len(merged),
        languages=languages,
    )


def build_transcript_text(segments: Iterable[TranscriptSegment]) -> str:
    """
    Транскрипт одним текстом.

    Формат:
    [speaker]: text
    """
    lines: list[str] = []
    for s in segments:
        text = normalize_text(s.text)
        if not text:
            continue
        lines.append(f"{s.speaker_id or 'UNKNOWN'}: {text}")
    return "\n".join(lines).strip()
