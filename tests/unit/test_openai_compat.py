from __future__ import annotations

import pytest
import requests

from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import ProviderError
from stt_orchestrator.domain.models import AudioChunk
from stt_orchestrator.stt.base import confidence_from_result
from stt_orchestrator.stt.config import OpenAICompatConfig
from stt_orchestrator.stt.openai_compat import OpenAICompatSTTProvider


class _Resp:
    def __init__(self, status_code: int = 200, payload=None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _provider(monkeypatch, tmp_path) -> OpenAICompatSTTProvider:
    monkeypatch.setattr(get_settings(), "stt_temp_dir", str(tmp_path))
    p = OpenAICompatSTTProvider(
        OpenAICompatConfig(api_base="http://stt.local/v1/", api_key="k", language="ru")
    )
    p.initialize()
    p.start_streaming()
    return p


def _chunk() -> AudioChunk:
    return AudioChunk(sequence_id=4, data=b"\x00\x01" * 800, start_time=10.0, end_time=10.05)


def test_transcribe_posts_wav_and_parses_segments(monkeypatch, tmp_path) -> None:
    seen: dict = {}

    def fake_post(url, headers=None, data=None, files=None, timeout=None):
        fh = files["file"][1]
        seen["url"] = url
        seen["auth"] = headers["Authorization"]
        seen["form"] = dict(data)
        seen["path"] = fh.name
        seen["head"] = fh.read(4)
        return _Resp(
            payload={
                "text": " привет мир ",
                "language": "ru",
                "segments": [
                    {"text": "привет", "start": 0.0, "end": 0.02, "avg_logprob": -0.2},
                    {"text": "мир", "start": 0.02, "end": 0.05, "avg_logprob": -0.4},
                ],
            }
        )

    monkeypatch.setattr("stt_orchestrator.stt.openai_compat.requests.post", fake_post)
    p = _provider(monkeypatch, tmp_path)

    res = p.transcribe(_chunk())

    assert seen["url"] == "http://stt.local/v1/audio/transcriptions"
    assert seen["auth"] == "Bearer k"
    assert seen["form"]["response_format"] == "verbose_json"
    assert seen["form"]["language"] == "ru"
    assert seen["head"] == b"RIFF"
    assert res.text == "привет мир"
    assert len(res.segments) == 2
    assert confidence_from_result(res) == pytest.approx(0.35)
    # временный файл удалён сразу после вызова
    assert list(tmp_path.iterdir()) == []


@pytest.mark.parametrize(
    ("status", "kind", "fatal"),
    [
        (401, "unavailable", True),
        (403, "unavailable", True),
        (408, "timeout", False),
        (504, "timeout", False),
        (429, "unavailable", False),
        (500, "unavailable", False),
    ],
)
def test_http_status_mapping(monkeypatch, tmp_path, status, kind, fatal) -> None:
    monkeypatch.setattr(
        "stt_orchestrator.stt.openai_compat.requests.post",
        lambda *a, **kw: _Resp(status_code=status, text="err"),
    )
    p = _provider(monkeypatch, tmp_path)

    with pytest.raises(ProviderError) as ei:
        p.transcribe(_chunk())
    assert ei.value.kind.value == kind
    assert ei.value.fatal is fatal
    assert ei.value.details["status"] == status
    assert list(tmp_path.iterdir()) == []


def test_connection_error_is_network(monkeypatch, tmp_path) -> None:
    def boom(*a, **kw):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr("stt_orchestrator.stt.openai_compat.requests.post", boom)
    p = _provider(monkeypatch, tmp_path)

    with pytest.raises(ProviderError) as ei:
        p.transcribe(_chunk())
    assert ei.value.kind.value == "network"
    assert ei.value.details["stage"] == "connect"
    assert ei.value.provider == "openai_compat"
    assert list(tmp_path.iterdir()) == []


def test_requests_timeout_is_timeout(monkeypatch, tmp_path) -> None:
    def slow(*a, **kw):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr("stt_orchestrator.stt.openai_compat.requests.post", slow)
    p = _provider(monkeypatch, tmp_path)

    with pytest.raises(ProviderError) as ei:
        p.transcribe(_chunk())
    assert ei.value.kind.value == "timeout"


def test_invalid_json_is_decode_failure(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(
        "stt_orchestrator.stt.openai_compat.requests.post",
        lambda *a, **kw: _Resp(status_code=200, payload=None, text="<html>"),
    )
    p = _provider(monkeypatch, tmp_path)

    with pytest.raises(ProviderError) as ei:
        p.transcribe(_chunk())
    assert ei.value.kind.value == "decode_failure"


def test_initialize_requires_credentials() -> None:
    p = OpenAICompatSTTProvider(OpenAICompatConfig(api_base="", api_key=""))
    with pytest.raises(ProviderError) as ei:
        p.initialize()
    assert ei.value.fatal is True
    assert p.is_initialized is False
