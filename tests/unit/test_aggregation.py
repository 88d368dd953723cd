from __future__ import annotations

import pytest

from stt_orchestrator.domain.models import TranscriptSegment
from stt_orchestrator.processing.aggregation import (
    build_aggregated_transcript,
    build_transcript_text,
    merge_segments,
)
from stt_orchestrator.processing.speakers import speaker_color, speaker_name


def _seg(start, end, text, speaker="SPK1", conf=0.9, lang="ru") -> TranscriptSegment:
    return TranscriptSegment(
        id=f"s{start}",
        start_time=start,
        end_time=end,
        text=text,
        confidence=conf,
        is_final=True,
        timestamp=end,
        speaker_id=speaker,
        language=lang,
    )


def test_build_transcript_text() -> None:
    segs = [_seg(0, 1, "raw  one"), _seg(1, 2, "raw two", speaker=None), _seg(2, 3, "  ")]

    text = build_transcript_text(segs)

    assert text == "SPK1: raw one\nUNKNOWN: raw two"


def test_merge_does_not_mutate_input() -> None:
    segs = [_seg(0, 1, "a", conf=0.8), _seg(1.5, 2, "b", conf=0.4)]

    merged = merge_segments(segs, max_gap_sec=1.0)

    assert len(merged) == 1
    assert merged[0].text == "a b"
    assert merged[0].confidence == pytest.approx(0.6)
    assert segs[0].text == "a"
    assert segs[0].end_time == 1


def test_aggregated_summary() -> None:
    segs = [
        _seg(3, 4, "три", lang="en"),
        _seg(0, 1, "раз два", speaker="SPK2"),
    ]

    t = build_aggregated_transcript("sess", segs, max_gap_sec=0.5, speaker_count=2, started_at=0)

    assert [s.text for s in t.segments] == ["раз два", "три"]
    assert t.total_duration == 4
    assert t.word_count == 3
    assert t.languages == ["ru", "en"]
    assert t.to_dict()["segments"][0]["speaker_id"] == "SPK2"


def test_empty_transcript() -> None:
    t = build_aggregated_transcript("sess", [], max_gap_sec=1, speaker_count=0, started_at=10.0)
    assert t.segments == []
    assert t.start_time == t.end_time == 10.0


def test_speaker_palette_wraps() -> None:
    assert speaker_name("speaker_3") == "Спикер 3"
    assert speaker_color("speaker_1") == speaker_color("speaker_9")
    assert speaker_color("unknown") == speaker_color("speaker_1")
