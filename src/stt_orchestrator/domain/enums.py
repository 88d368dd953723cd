"""
Доменные перечисления (enum).

Используются во всей системе:
- типы провайдеров (tagged union конфигов)
- состояния провайдера (машина состояний)
- классификация ошибок для ErrorTracker
"""

from __future__ import annotations

import enum


class ProviderType(str, enum.Enum):
    """
    Тип провайдера STT.
    """

    whisper_local = "whisper_local"
    openai_compat = "openai_compat"
    mock = "mock"


class ProviderState(str, enum.Enum):
    """
    Состояние экземпляра провайдера внутри ProviderManager.
    """

    uninitialized = "uninitialized"
    initializing = "initializing"
    ready = "ready"
    streaming = "streaming"
    error = "error"
    recovering = "recovering"
    failed = "failed"
    stopped = "stopped"


class ErrorType(str, enum.Enum):
    """
    Тип ошибки в журнале ErrorTracker.
    """

    initialization_error = "initialization_error"
    connection_error = "connection_error"
    authentication_error = "authentication_error"
    rate_limit_error = "rate_limit_error"
    invalid_request_error = "invalid_request_error"
    provider_error = "provider_error"
    network_error = "network_error"
    timeout_error = "timeout_error"
    unknown_error = "unknown_error"


class ErrorSeverity(str, enum.Enum):
    """
    Серьёзность ошибки.
    """

    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"
