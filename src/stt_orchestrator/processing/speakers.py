"""
Простое разделение по говорящим (без акустики).

Если сегмент пришёл без speaker_id, говорящий угадывается по паузе:
- пауза меньше SAME_SPEAKER_GAP_SEC после предыдущего сегмента → тот же говорящий
- иначе → новый говорящий speaker_<N+1>, где N: число говорящих в последних сегментах
"""

from __future__ import annotations

from collections.abc import Sequence

from stt_orchestrator.domain.models import Speaker, TranscriptSegment

SAME_SPEAKER_GAP_SEC = 1.0
RECENT_WINDOW = 10

SPEAKER_COLORS = (
    "#3B82F6",  # blue
    "#EF4444",  # red
    "#10B981",  # green
    "#F59E0B",  # yellow
    "#8B5CF6",  # purple
    "#F97316",  # orange
    "#06B6D4",  # cyan
    "#EC4899",  # pink
)

DEFAULT_SPEAKER = "speaker_1"


def speaker_number(speaker_id: str) -> int:
    _, _, tail = speaker_id.rpartition("_")
    try:
        return max(1, int(tail))
    except ValueError:
        return 1


def speaker_color(speaker_id: str) -> str:
    return SPEAKER_COLORS[(speaker_number(speaker_id) - 1) % len(SPEAKER_COLORS)]


def speaker_name(speaker_id: str) -> str:
    return f"Спикер {speaker_number(speaker_id)}"


def detect_speaker(
    segment: TranscriptSegment,
    history: Sequence[TranscriptSegment],
    *,
    same_speaker_gap_sec: float = SAME_SPEAKER_GAP_SEC,
) -> str:
    recent = list(history)[-RECENT_WINDOW:]
    if not recent:
        return DEFAULT_SPEAKER

    last = recent[-1]
    if segment.start_time - last.end_time < same_speaker_gap_sec:
        return last.speaker_id or DEFAULT_SPEAKER

    known = {s.speaker_id for s in recent if s.speaker_id}
    return f"speaker_{len(known) + 1}"


def new_speaker(speaker_id: str) -> Speaker:
    return Speaker(id=speaker_id, name=speaker_name(speaker_id), color=speaker_color(speaker_id))


def update_speaker_stats(speaker: Speaker, segment: TranscriptSegment) -> None:
    """
    Инкрементальное обновление статистики по финальному сегменту (running mean).
    """
    speaker.total_segments += 1
    speaker.total_duration += segment.end_time - segment.start_time
    speaker.average_confidence += (
        segment.confidence - speaker.average_confidence
    ) / speaker.total_segments
