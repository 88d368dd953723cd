"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для событий sttError и ErrorTracker
- единый стиль исключений по проекту

Классы ошибок:
- ValidationError: кривой профиль/конфиг (фатально для вызова, не для процесса)
- NotInitialized / NotFound / NotStreaming / SwitchInProgress: нарушение предусловий,
  сообщаем и не ретраим
- ProviderError{kind}: ретраится по политике профиля, потом fallback
- InternalError: неожиданное, пишем в ErrorTracker и прерываем операцию
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"

    # Предусловия
    NOT_INITIALIZED = "not_initialized"
    NOT_STREAMING = "not_streaming"
    SWITCH_IN_PROGRESS = "switch_in_progress"
    SESSION_STATE = "session_state"

    # Провайдеры
    STT_PROVIDER_ERROR = "stt_provider_error"

    # Хранилище профилей
    STORAGE_ERROR = "storage_error"


class ProviderErrorKind(str, enum.Enum):
    """
    Вид ошибки провайдера.
    """

    network = "network"
    timeout = "timeout"
    decode_failure = "decode_failure"
    unavailable = "unavailable"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class ConflictError(AppError):
    def __init__(self, message: str = "Конфликт", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFLICT, message, details)


class NotInitializedError(AppError):
    def __init__(
        self, message: str = "Провайдер не инициализирован", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.NOT_INITIALIZED, message, details)


class NotStreamingError(AppError):
    def __init__(
        self, message: str = "Стриминг не запущен", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.NOT_STREAMING, message, details)


class SwitchInProgressError(AppError):
    def __init__(
        self, message: str = "Переключение уже выполняется", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.SWITCH_IN_PROGRESS, message, details)


class SessionStateError(AppError):
    def __init__(
        self, message: str = "Недопустимое состояние сессии", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.SESSION_STATE, message, details)


class InternalError(AppError):
    def __init__(self, message: str = "Внутренняя ошибка", details: dict | None = None) -> None:
        super().__init__(ErrCode.INTERNAL, message, details)


class ProviderError(AppError):
    """
    Ошибка провайдера STT.
    - kind: network|timeout|decode_failure|unavailable
    - fatal: повтор бессмысленен (например, неверный ключ API), провайдер -> FAILED
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        details: dict | None = None,
        *,
        provider: str | None = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(ErrCode.STT_PROVIDER_ERROR, message, details)
        self.kind = ProviderErrorKind(kind)
        self.provider = provider
        self.fatal = fatal


class StorageError(AppError):
    def __init__(
        self, message: str = "Ошибка хранилища профилей", details: dict | None = None
    ) -> None:
        super().__init__(ErrCode.STORAGE_ERROR, message, details)
