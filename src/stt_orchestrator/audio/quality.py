"""
Анализ уровня сигнала PCM16.

Используется, чтобы не гонять тишину через провайдера (AUDIO_SKIP_SILENT_CHUNKS).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

_MAX_INT16 = 32767.0
SILENCE_THRESHOLD = 100
SILENCE_RATIO = 0.9


@dataclass
class AudioLevel:
    level: float  # 0..100, средняя амплитуда
    peak: float  # 0..100
    rms: float  # 0..100
    silence: bool


def _samples(data: bytes) -> np.ndarray:
    usable = len(data) - len(data) % 2
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.float64)


def analyze_pcm16(data: bytes) -> AudioLevel:
    samples = _samples(data)
    if samples.size == 0:
        return AudioLevel(level=0.0, peak=0.0, rms=0.0, silence=True)

    absolute = np.abs(samples)
    average = float(absolute.mean())
    peak = float(absolute.max())
    rms = float(np.sqrt(np.mean(samples**2)))
    quiet = float(np.count_nonzero(absolute < SILENCE_THRESHOLD)) / samples.size

    return AudioLevel(
        level=average / _MAX_INT16 * 100,
        peak=peak / _MAX_INT16 * 100,
        rms=rms / _MAX_INT16 * 100,
        silence=quiet > SILENCE_RATIO,
    )


def is_silence(data: bytes) -> bool:
    return analyze_pcm16(data).silence
