"""
Метрики Prometheus для STT-оркестратора.

Назначение:
- счётчики по чанкам, вызовам провайдеров, переключениям и ошибкам
- гистограммы задержек по стадиям
- экспорт через prometheus_client.start_http_server (apps/stt_stream --metrics-port)
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

AUDIO_CHUNKS_TOTAL = Counter(
    "stt_audio_chunks_total",
    "Количество сформированных аудио-чанков",
    ["kind"],  # full|flush
)

AUDIO_BYTES_DROPPED_TOTAL = Counter(
    "stt_audio_bytes_dropped_total",
    "Байты аудио, пришедшие вне стриминга (сброшены)",
)

TRANSCRIBE_REQUESTS_TOTAL = Counter(
    "stt_transcribe_requests_total",
    "Вызовы transcribe по провайдерам",
    ["provider", "result"],  # ok|failed|timeout
)

TRANSCRIBE_LATENCY_MS = Histogram(
    "stt_transcribe_latency_ms",
    "Задержка вызова провайдера (мс)",
    ["provider"],
    buckets=(25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000),
)

PROVIDER_INFLIGHT = Gauge(
    "stt_provider_inflight",
    "Текущее количество вызовов transcribe в полёте",
    ["provider"],
)

PROVIDER_SWITCHES_TOTAL = Counter(
    "stt_provider_switches_total",
    "Переключения текущего провайдера",
    ["source", "target", "reason"],  # reason=manual|fallback|profile
)

STT_ERRORS_TOTAL = Counter(
    "stt_errors_total",
    "Ошибки пайплайна по типу и серьёзности",
    ["type", "severity"],
)

SEGMENTS_INGESTED_TOTAL = Counter(
    "stt_segments_ingested_total",
    "Сегменты, принятые агрегатором",
    ["final", "action"],  # action=append|supersede|drop
)

ORDERING_GAPS_TOTAL = Counter(
    "stt_ordering_gaps_total",
    "Чанки, превращённые в разрыв (ошибка/таймаут/тишина)",
    ["reason"],
)

PIPELINE_STAGE_LATENCY_MS = Histogram(
    "stt_pipeline_stage_latency_ms",
    "Задержка выполнения стадий (мс)",
    ["stage"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)


@contextmanager
def track_stage_latency(stage: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        PIPELINE_STAGE_LATENCY_MS.labels(stage=stage).observe(elapsed_ms)

