"""
Конфигурация провайдеров и движка (Pydantic-модели).

Назначение:
- tagged union конфигов по полю kind: у каждого провайдера свой типизированный конфиг
- EngineConfig: политика ретраев/fallback/конкурентности профиля
- TranscriptionOptions: опции распознавания по умолчанию для сессии

Сериализация: в camelCase (совместимо с файлом профилей {profiles, currentProfileId}).
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from stt_orchestrator.common.config import get_settings
from stt_orchestrator.domain.enums import ProviderType


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


# =============================================================================
# КОНФИГИ ПРОВАЙДЕРОВ
# =============================================================================
class WhisperLocalConfig(CamelModel):
    kind: Literal["whisper_local"] = "whisper_local"
    model_size: str = "small"
    device: str = "cpu"
    compute_type: str = "int8"
    language: str | None = None
    vad_filter: bool = True
    beam_size: int = Field(default=5, ge=1)


class OpenAICompatConfig(CamelModel):
    kind: Literal["openai_compat"] = "openai_compat"
    api_base: str = ""
    api_key: str = ""
    model: str = "whisper-1"
    language: str | None = None
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)
    timeout_s: int = Field(default=60, ge=1)
    verify_on_init: bool = False


class MockProviderConfig(CamelModel):
    kind: Literal["mock"] = "mock"
    text: str = "mock_transcript"
    avg_log_prob: float = 0.0
    language: str | None = "ru"
    latency_ms: int = Field(default=0, ge=0)
    # первые N вызовов transcribe падают с fail_kind
    fail_times: int = Field(default=0, ge=0)
    fail_kind: Literal["network", "timeout", "decode_failure", "unavailable"] = "network"
    fail_on_initialize: bool = False


ProviderConfig = Annotated[
    WhisperLocalConfig | OpenAICompatConfig | MockProviderConfig,
    Field(discriminator="kind"),
]


def default_provider_config(
    kind: ProviderType,
) -> WhisperLocalConfig | OpenAICompatConfig | MockProviderConfig:
    """
    Конфиг провайдера по умолчанию (значения берутся из Settings).
    """
    s = get_settings()
    if kind == ProviderType.whisper_local:
        return WhisperLocalConfig(
            model_size=s.whisper_model_size,
            device=s.whisper_device,
            compute_type=s.whisper_compute_type,
            language=s.whisper_language,
            vad_filter=s.whisper_vad_filter,
            beam_size=s.whisper_beam_size,
        )
    if kind == ProviderType.openai_compat:
        # api_base/api_key не копируем: конфиг уходит в файл профилей и в export,
        # пустые значения подставляет factory из Settings
        return OpenAICompatConfig(
            model=s.openai_stt_model,
            timeout_s=s.openai_timeout_s,
        )
    if kind == ProviderType.mock:
        return MockProviderConfig()
    raise ValueError(f"unknown provider kind: {kind!r}")


# =============================================================================
# ДВИЖОК (политика профиля)
# =============================================================================
class EngineConfig(CamelModel):
    default_provider: ProviderType
    providers: dict[ProviderType, ProviderConfig] = Field(default_factory=dict)
    auto_switch: bool = False
    fallback_provider: ProviderType | None = None
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=1000, ge=0)  # мс
    connection_timeout: int = Field(default=30000, gt=0)  # мс
    max_concurrent_requests: int = Field(default=5, ge=1)
    exponential_backoff: bool = False

    @model_validator(mode="after")
    def _check_providers(self) -> EngineConfig:
        for key, cfg in self.providers.items():
            if cfg.kind != key.value:
                raise ValueError(
                    f"providers[{key.value}] has kind={cfg.kind}, expected {key.value}"
                )
        for needed in (self.default_provider, self.fallback_provider):
            if needed is not None and needed not in self.providers:
                self.providers[needed] = default_provider_config(needed)
        return self

    def provider_config(self, kind: ProviderType):
        return self.providers.get(kind)

    def retry_delay_for(self, attempt: int) -> int:
        """Пауза перед повтором номер attempt (с 1), мс."""
        if not self.exponential_backoff or attempt <= 1:
            return self.retry_delay
        return self.retry_delay * 2 ** (attempt - 1)


# =============================================================================
# ОПЦИИ РАСПОЗНАВАНИЯ
# =============================================================================
class TranscriptionOptions(CamelModel):
    language: str | None = None
    model: str | None = None
    interim_results: bool = True
    punctuate: bool = True
    profanity_filter: bool = False
    smart_format: bool = True
    diarize: bool = False
    speaker_labels: bool = False
    confidence_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    max_alternatives: int = Field(default=1, ge=1)

    @field_validator("language")
    @classmethod
    def _strip_language(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def merged(self, overrides: TranscriptionOptions | dict | None) -> TranscriptionOptions:
        if overrides is None:
            return self
        if isinstance(overrides, TranscriptionOptions):
            patch = overrides.model_dump(exclude_unset=True)
        else:
            patch = TranscriptionOptions.model_validate(overrides).model_dump(exclude_unset=True)
        return self.model_copy(update=patch)
