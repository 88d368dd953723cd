"""
Сборка провайдера по типу.

Тяжёлые зависимости (faster-whisper, av) импортируются только когда
провайдер реально нужен.
"""

from __future__ import annotations

from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import ValidationError
from stt_orchestrator.domain.enums import ProviderType
from stt_orchestrator.stt.base import STTProvider
from stt_orchestrator.stt.config import (
    MockProviderConfig,
    OpenAICompatConfig,
    WhisperLocalConfig,
    default_provider_config,
)

_CONFIG_TYPES = {
    ProviderType.whisper_local: WhisperLocalConfig,
    ProviderType.openai_compat: OpenAICompatConfig,
    ProviderType.mock: MockProviderConfig,
}


def _with_credentials(config: OpenAICompatConfig) -> OpenAICompatConfig:
    """
    Секреты не живут в профиле: пустые api_base/api_key берём из Settings
    в момент сборки адаптера (копия конфига, исходный не меняется).
    """
    s = get_settings()
    patch: dict[str, str] = {}
    if not config.api_base and s.openai_api_base:
        patch["api_base"] = s.openai_api_base
    if not config.api_key and s.openai_api_key:
        patch["api_key"] = s.openai_api_key
    return config.model_copy(update=patch) if patch else config


def build_provider(kind: ProviderType, config=None) -> STTProvider:
    try:
        kind = ProviderType(kind)
    except ValueError as e:
        raise ValidationError("Неизвестный провайдер", details={"provider": str(kind)}) from e
    if config is None:
        config = default_provider_config(kind)
    if not isinstance(config, _CONFIG_TYPES[kind]):
        raise ValidationError(
            "Конфиг не соответствует типу провайдера",
            details={"provider": kind.value, "config_kind": getattr(config, "kind", None)},
        )

    if kind == ProviderType.whisper_local:
        from stt_orchestrator.stt.whisper_local import WhisperLocalProvider

        return WhisperLocalProvider(config)

    if kind == ProviderType.openai_compat:
        from stt_orchestrator.stt.openai_compat import OpenAICompatSTTProvider

        return OpenAICompatSTTProvider(_with_credentials(config))

    from stt_orchestrator.stt.mock import MockSTTProvider

    return MockSTTProvider(config)
