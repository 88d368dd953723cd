"""
Централизованная конфигурация STT-оркестратора (ENV / .env).

Важно:
- настройки читаются из .env и переменных окружения
- типизированные значения через pydantic-settings
- профили провайдеров (STTProfile) живут отдельно, в ProfileStore;
  здесь только процессные значения по умолчанию
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Runtime
    # -------------------------------------------------------------------------
    app_env: str = Field(default="dev", alias="APP_ENV")
    service_name: str = Field(default="stt-orchestrator", alias="SERVICE_NAME")

    # -------------------------------------------------------------------------
    # Профили (ProfileStore)
    # -------------------------------------------------------------------------
    stt_profiles_path: str = Field(default="./data/stt-profiles.json", alias="STT_PROFILES_PATH")
    stt_profiles_autosave: bool = Field(default=True, alias="STT_PROFILES_AUTOSAVE")
    stt_profiles_backup_enabled: bool = Field(default=True, alias="STT_PROFILES_BACKUP_ENABLED")
    stt_profiles_max_backups: int = Field(default=5, alias="STT_PROFILES_MAX_BACKUPS")

    # Провайдер, если текущего профиля ещё нет: whisper_local|openai_compat|mock
    stt_default_provider: str = Field(default="whisper_local", alias="STT_DEFAULT_PROVIDER")

    # Временные файлы чанков (удаляются сразу после вызова провайдера)
    stt_temp_dir: str = Field(default="./data/tmp", alias="STT_TEMP_DIR")

    # -------------------------------------------------------------------------
    # Аудио / чанкование
    # -------------------------------------------------------------------------
    audio_sample_rate: int = Field(default=16000, alias="AUDIO_SAMPLE_RATE")
    audio_channels: int = Field(default=1, alias="AUDIO_CHANNELS")
    audio_bit_depth: int = Field(default=16, alias="AUDIO_BIT_DEPTH")
    audio_chunk_duration_sec: float = Field(default=5.0, alias="AUDIO_CHUNK_DURATION_SEC")
    audio_overlap_duration_sec: float = Field(default=0.0, alias="AUDIO_OVERLAP_DURATION_SEC")
    audio_skip_silent_chunks: bool = Field(default=False, alias="AUDIO_SKIP_SILENT_CHUNKS")

    # Сколько ждём результат чанка, прежде чем считать его "дыркой" в порядке
    ordering_timeout_sec: float = Field(default=60.0, alias="ORDERING_TIMEOUT_SEC")

    # -------------------------------------------------------------------------
    # Ошибки (ErrorTracker)
    # -------------------------------------------------------------------------
    error_ledger_capacity: int = Field(default=100, alias="ERROR_LEDGER_CAPACITY")
    error_threshold: int = Field(default=5, alias="ERROR_THRESHOLD")
    error_threshold_window_sec: float = Field(default=60.0, alias="ERROR_THRESHOLD_WINDOW_SEC")

    # -------------------------------------------------------------------------
    # Агрегация транскрипта
    # -------------------------------------------------------------------------
    aggregator_batch_size: int = Field(default=10, alias="AGGREGATOR_BATCH_SIZE")
    aggregator_max_segment_gap_sec: float = Field(
        default=2.0, alias="AGGREGATOR_MAX_SEGMENT_GAP_SEC"
    )
    aggregator_min_segment_duration_sec: float = Field(
        default=0.0, alias="AGGREGATOR_MIN_SEGMENT_DURATION_SEC"
    )
    aggregator_speaker_separation: bool = Field(
        default=False, alias="AGGREGATOR_SPEAKER_SEPARATION"
    )

    # -------------------------------------------------------------------------
    # STT: локальный Whisper (faster-whisper)
    # -------------------------------------------------------------------------
    whisper_model_size: str = Field(
        default="small", alias="WHISPER_MODEL_SIZE"
    )  # tiny|base|small|medium|large-v3
    whisper_device: str = Field(default="cpu", alias="WHISPER_DEVICE")  # cpu|cuda
    whisper_compute_type: str = Field(
        default="int8", alias="WHISPER_COMPUTE_TYPE"
    )  # int8|float16|float32
    whisper_language: str | None = Field(default=None, alias="WHISPER_LANGUAGE")
    whisper_vad_filter: bool = Field(default=True, alias="WHISPER_VAD_FILTER")
    whisper_beam_size: int = Field(default=5, alias="WHISPER_BEAM_SIZE")

    # -------------------------------------------------------------------------
    # STT: удалённый OpenAI-compatible сервис
    # -------------------------------------------------------------------------
    openai_api_base: str | None = Field(default=None, alias="OPENAI_API_BASE")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_stt_model: str = Field(default="whisper-1", alias="OPENAI_STT_MODEL")
    openai_timeout_s: int = Field(default=60, alias="OPENAI_TIMEOUT_S")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")  # json|text

    def model_post_init(self, __context) -> None:
        _apply_file_overrides(self)


def _apply_file_overrides(settings: Settings) -> None:
    """
    Docker-secrets стиль: OPENAI_API_KEY_FILE=/run/secrets/key -> openai_api_key.
    """
    alias_to_field = {}
    for name, field in type(settings).model_fields.items():
        alias = field.alias or name
        alias_to_field[str(alias)] = name
        alias_to_field[str(name)] = name

    for key, path in os.environ.items():
        if not key.endswith("_FILE"):
            continue
        base = key[: -len("_FILE")]
        target = alias_to_field.get(base)
        if not target:
            continue
        file_path = (path or "").strip()
        if not file_path:
            continue
        try:
            raw = Path(file_path).read_text(encoding="utf-8")
        except Exception as e:
            logging.getLogger("stt-orchestrator").error(
                "config_file_read_failed",
                extra={"payload": {"env_key": key, "path": file_path, "error": str(e)[:200]}},
            )
            raise RuntimeError(f"Failed to read {key} from {file_path}") from e
        setattr(settings, target, (raw or "").strip())


_SETTINGS = Settings()


def get_settings() -> Settings:
    return _SETTINGS
