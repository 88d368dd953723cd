from __future__ import annotations

import math

import pytest

from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import NotStreamingError, ProviderError, ValidationError
from stt_orchestrator.domain.enums import ProviderState, ProviderType
from stt_orchestrator.domain.models import AudioChunk, ResultSegment, TranscriptionResult
from stt_orchestrator.stt.base import confidence_from_result, normalize_confidence
from stt_orchestrator.stt.config import MockProviderConfig, OpenAICompatConfig
from stt_orchestrator.stt.factory import build_provider
from stt_orchestrator.stt.mock import MockSTTProvider


def _chunk(seq: int = 1) -> AudioChunk:
    return AudioChunk(sequence_id=seq, data=b"\x00\x00" * 1600, start_time=0.0, end_time=0.1)


def test_confidence_normalization_bounds() -> None:
    assert normalize_confidence(1.0) == 1.0
    assert normalize_confidence(-1.0) == 0.0
    assert normalize_confidence(0.0) == 0.5
    assert normalize_confidence(7.5) == 1.0
    assert normalize_confidence(-42.0) == 0.0
    assert normalize_confidence(math.nan) == 0.0
    assert normalize_confidence(math.inf) == 1.0


def test_confidence_from_result_averages_subsegments() -> None:
    assert confidence_from_result(TranscriptionResult(text="")) == 0.0

    result = TranscriptionResult(
        text="a b",
        segments=(
            ResultSegment(text="a", start_offset=0, end_offset=1, avg_log_prob=-0.2),
            ResultSegment(text="b", start_offset=1, end_offset=2, avg_log_prob=-0.6),
        ),
    )
    assert confidence_from_result(result) == pytest.approx(0.3)


def test_mock_requires_streaming() -> None:
    p = MockSTTProvider()
    with pytest.raises(ProviderError):
        p.start_streaming()

    p.initialize()
    with pytest.raises(NotStreamingError):
        p.transcribe(_chunk())

    p.start_streaming()
    res = p.transcribe(_chunk(7))
    assert res.text == "mock_transcript seq=7 bytes=3200"
    assert res.provider == ProviderType.mock
    assert p.get_status().state == ProviderState.streaming


def test_initialize_is_idempotent() -> None:
    p = MockSTTProvider()
    p.initialize()
    p.initialize()
    st = p.get_status()
    assert st.is_initialized is True
    assert st.is_streaming is False


def test_mock_failure_injection_sets_provider() -> None:
    p = MockSTTProvider(MockProviderConfig(fail_times=2, fail_kind="timeout"))
    p.initialize()
    p.start_streaming()

    for _ in range(2):
        with pytest.raises(ProviderError) as ei:
            p.transcribe(_chunk())
        assert ei.value.kind.value == "timeout"
        assert ei.value.provider == "mock"

    assert p.transcribe(_chunk()).text.startswith("mock_transcript")
    assert p.calls == 3


def test_factory_dispatch() -> None:
    p = build_provider(ProviderType.mock, MockProviderConfig(text="hello"))
    assert isinstance(p, MockSTTProvider)

    with pytest.raises(ValidationError):
        build_provider(ProviderType.mock, OpenAICompatConfig())
    with pytest.raises(ValidationError):
        build_provider("nope")
    with pytest.raises(ValidationError):
        build_provider(ProviderType.whisper_local, MockProviderConfig())


def test_factory_resolves_openai_credentials_at_build(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "openai_api_key", "sk-env")
    monkeypatch.setattr(get_settings(), "openai_api_base", "http://stt.local/v1")
    stored = OpenAICompatConfig()

    p = build_provider(ProviderType.openai_compat, stored)

    assert p.config.api_key == "sk-env"
    assert p.config.api_base == "http://stt.local/v1"
    assert stored.api_key == ""

    explicit = build_provider(ProviderType.openai_compat, OpenAICompatConfig(api_key="own"))
    assert explicit.config.api_key == "own"
