"""
Локальный STT на базе faster-whisper.

Что делает:
- принимает PCM-чанк (по умолчанию 16 kHz / mono / 16 bit)
- приводит его к float32 16 kHz mono (numpy; PyAV-ресемплер для других форматов)
- запускает Whisper модель локально
- возвращает текст + сегменты с avg_logprob (из них считается уверенность)

Примечание:
- модель грузится в initialize(), а не в конструкторе: ProviderManager
  решает, когда платить за загрузку
"""

from __future__ import annotations

import av  # PyAV (ffmpeg bindings)
import numpy as np
from faster_whisper import WhisperModel

from stt_orchestrator.common.errors import ProviderError
from stt_orchestrator.domain.enums import ProviderType
from stt_orchestrator.domain.models import AudioChunk, ResultSegment, TranscriptionResult
from stt_orchestrator.stt.base import STTProvider
from stt_orchestrator.stt.config import TranscriptionOptions, WhisperLocalConfig

TARGET_SR = 16000


def _pcm16_to_float32(
    pcm: bytes, *, sample_rate: int, channels: int, target_sr: int = TARGET_SR
) -> np.ndarray:
    """
    PCM16 little-endian -> моно float32 target_sr.
    """
    usable = len(pcm) - len(pcm) % (2 * channels)
    if usable <= 0:
        return np.zeros((0,), dtype=np.float32)
    raw = np.frombuffer(pcm[:usable], dtype="<i2")

    if sample_rate == target_sr and channels == 1:
        return raw.astype(np.float32) / 32768.0

    # общий случай: через ресемплер libav
    layout = "mono" if channels == 1 else "stereo"
    frame = av.AudioFrame.from_ndarray(raw.reshape(1, -1), format="s16", layout=layout)
    frame.sample_rate = sample_rate
    resampler = av.AudioResampler(format="fltp", layout="mono", rate=target_sr)

    samples: list[np.ndarray] = []
    for out in [*resampler.resample(frame), *resampler.resample(None)]:
        arr = out.to_ndarray()
        if arr.ndim == 2:
            arr = arr[0]
        samples.append(arr.astype(np.float32))

    if not samples:
        return np.zeros((0,), dtype=np.float32)
    return np.concatenate(samples)


class WhisperLocalProvider(STTProvider):
    provider_type = ProviderType.whisper_local
    display_name = "Whisper Local"

    def __init__(self, config: WhisperLocalConfig | None = None) -> None:
        super().__init__()
        self.config = config or WhisperLocalConfig()
        self.model: WhisperModel | None = None

    def _do_initialize(self) -> None:
        try:
            self.model = WhisperModel(
                self.config.model_size,
                device=self.config.device,
                compute_type=self.config.compute_type,
            )
        except Exception as e:
            raise ProviderError(
                "unavailable",
                "Не удалось загрузить модель Whisper",
                {"model_size": self.config.model_size, "err": str(e)[:300]},
            ) from e

    def _do_close(self) -> None:
        self.model = None

    def _do_transcribe(
        self, chunk: AudioChunk, options: TranscriptionOptions
    ) -> TranscriptionResult:
        if self.model is None:
            raise ProviderError("unavailable", "Модель Whisper не загружена")
        if chunk.bit_depth != 16:
            raise ProviderError(
                "decode_failure",
                "Whisper Local принимает только PCM16",
                {"bit_depth": chunk.bit_depth},
            )

        wav = _pcm16_to_float32(chunk.data, sample_rate=chunk.sample_rate, channels=chunk.channels)
        if wav.size == 0:
            return TranscriptionResult(text="", provider=self.provider_type)

        language = options.language or self.config.language
        try:
            segments, info = self.model.transcribe(
                wav,
                language=language,
                vad_filter=self.config.vad_filter,
                beam_size=self.config.beam_size,
            )
            # segments: генератор, декодирование происходит здесь
            parts = [
                ResultSegment(
                    text=(seg.text or "").strip(),
                    start_offset=float(seg.start),
                    end_offset=float(seg.end),
                    avg_log_prob=float(seg.avg_logprob),
                )
                for seg in segments
            ]
        except Exception as e:
            raise ProviderError(
                "decode_failure",
                "Ошибка распознавания Whisper",
                {"seq": chunk.sequence_id, "err": str(e)[:300]},
            ) from e

        text = " ".join(p.text for p in parts if p.text).strip()
        return TranscriptionResult(
            text=text,
            segments=tuple(p for p in parts if p.text),
            language=getattr(info, "language", None) or language,
            is_final=True,
            provider=self.provider_type,
        )
