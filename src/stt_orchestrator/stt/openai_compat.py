"""
Облачный STT через OpenAI-compatible endpoint (/audio/transcriptions).

Чанк пишется во временный WAV, файл уходит multipart-запросом и удаляется
на любом пути выхода. Ошибки HTTP раскладываются по ProviderErrorKind,
чтобы ProviderManager мог решать: ретраить, переключаться или сдаваться.
"""

from __future__ import annotations

import requests

from stt_orchestrator.audio.wav import temp_wav_file
from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import ProviderError
from stt_orchestrator.common.logging import get_provider_logger
from stt_orchestrator.domain.enums import ProviderType
from stt_orchestrator.domain.models import AudioChunk, ResultSegment, TranscriptionResult
from stt_orchestrator.stt.base import STTProvider
from stt_orchestrator.stt.config import OpenAICompatConfig, TranscriptionOptions

log = get_provider_logger()

_TIMEOUT_STATUSES = {408, 504}
_AUTH_STATUSES = {401, 403}


def _status_error(status: int, text_head: str) -> ProviderError:
    details = {"status": status, "text_head": text_head}
    if status in _TIMEOUT_STATUSES:
        return ProviderError("timeout", "STT не дождался ответа", details)
    if status in _AUTH_STATUSES:
        return ProviderError("unavailable", "STT отклонил ключ API", details, fatal=True)
    return ProviderError("unavailable", "STT вернул ошибку", details)


class OpenAICompatSTTProvider(STTProvider):
    """Провайдер распознавания через OpenAI-compatible API."""

    provider_type = ProviderType.openai_compat
    display_name = "OpenAI-compatible STT"

    def __init__(self, config: OpenAICompatConfig | None = None) -> None:
        super().__init__()
        self.config = config or OpenAICompatConfig()

    @property
    def _base_url(self) -> str:
        return self.config.api_base.rstrip("/")

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _do_initialize(self) -> None:
        if not self.config.api_base:
            raise ProviderError("unavailable", "OPENAI_API_BASE не задан", fatal=True)
        if not self.config.api_key:
            raise ProviderError("unavailable", "OPENAI_API_KEY не задан", fatal=True)
        if not self.config.verify_on_init:
            return

        try:
            resp = requests.get(
                self._base_url + "/models", headers=self._headers, timeout=self.config.timeout_s
            )
        except requests.Timeout as e:
            raise ProviderError("timeout", "STT недоступен (таймаут проверки)") from e
        except requests.RequestException as e:
            raise ProviderError(
                "network", "STT недоступен", {"stage": "connect", "err": str(e)[:300]}
            ) from e
        if resp.status_code >= 400:
            raise _status_error(resp.status_code, resp.text[:500])

    def _do_transcribe(
        self, chunk: AudioChunk, options: TranscriptionOptions
    ) -> TranscriptionResult:
        form: dict[str, str] = {
            "model": options.model or self.config.model,
            "response_format": "verbose_json",
            "temperature": str(self.config.temperature),
        }
        language = options.language or self.config.language
        if language:
            form["language"] = language

        url = self._base_url + "/audio/transcriptions"
        with temp_wav_file(chunk, get_settings().stt_temp_dir) as path:
            try:
                with open(path, "rb") as fh:
                    resp = requests.post(
                        url,
                        headers=self._headers,
                        data=form,
                        files={"file": (path.name, fh, "audio/wav")},
                        timeout=self.config.timeout_s,
                    )
            except requests.Timeout as e:
                raise ProviderError(
                    "timeout", "STT не ответил вовремя", {"seq": chunk.sequence_id}
                ) from e
            except requests.ConnectionError as e:
                raise ProviderError(
                    "network",
                    "Ошибка соединения с STT",
                    {"stage": "connect", "seq": chunk.sequence_id, "err": str(e)[:300]},
                ) from e
            except requests.RequestException as e:
                log.error(
                    "stt_http_error",
                    extra={"payload": {"provider": "openai_compat", "err": str(e)[:300]}},
                )
                raise ProviderError(
                    "network", "Ошибка HTTP при вызове STT", {"err": str(e)[:300]}
                ) from e

        if resp.status_code >= 400:
            raise _status_error(resp.status_code, resp.text[:500])

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(
                "decode_failure",
                "STT вернул невалидный JSON",
                {"err": str(e), "text_head": resp.text[:500]},
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                "decode_failure", "Неожиданный формат ответа STT", {"data_head": str(data)[:500]}
            )

        return self._parse_response(data, chunk, language)

    def _parse_response(
        self, data: dict, chunk: AudioChunk, language: str | None
    ) -> TranscriptionResult:
        text = str(data.get("text") or "").strip()
        try:
            segments = tuple(
                ResultSegment(
                    text=str(seg.get("text") or "").strip(),
                    start_offset=float(seg.get("start", 0.0)),
                    end_offset=float(seg.get("end", chunk.duration)),
                    avg_log_prob=float(seg.get("avg_logprob", 0.0)),
                )
                for seg in data.get("segments") or []
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ProviderError(
                "decode_failure",
                "Не удалось разобрать сегменты ответа STT",
                {"err": str(e), "data_head": str(data)[:500]},
            ) from e

        # без сегментов уверенность неизвестна: считаем ответ целиком одним сегментом
        if not segments and text:
            segments = (
                ResultSegment(
                    text=text, start_offset=0.0, end_offset=chunk.duration, avg_log_prob=0.0
                ),
            )

        return TranscriptionResult(
            text=text,
            segments=segments,
            language=data.get("language") or language,
            is_final=True,
            provider=self.provider_type,
        )
