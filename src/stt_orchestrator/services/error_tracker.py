"""
Журнал ошибок STT-пайплайна.

Назначение:
- классификация исключений в {type, severity}
- ограниченный журнал (кольцевой буфер, старые вытесняются)
- статистика по типам/серьёзности/провайдерам и среднее время восстановления
- событие sttError на каждую запись, errorThresholdExceeded при всплеске ошибок

Время восстановления: от момента ошибки до следующего успешного вызова
того же провайдера (record_success). Ошибки без провайдера и без
последующего успеха в среднее не входят.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import (
    AppError,
    ErrCode,
    ProviderError,
    ProviderErrorKind,
)
from stt_orchestrator.common.events import EventChannel
from stt_orchestrator.common.ids import new_error_id
from stt_orchestrator.common.logging import get_project_logger
from stt_orchestrator.common.metrics import STT_ERRORS_TOTAL
from stt_orchestrator.common.time import utc_now
from stt_orchestrator.contracts.events import ErrorThresholdExceededEvent, STTErrorEvent
from stt_orchestrator.domain.enums import ErrorSeverity, ErrorType
from stt_orchestrator.domain.models import STTErrorRecord

log = get_project_logger()

_LOG_LEVELS = {
    ErrorSeverity.low: logging.INFO,
    ErrorSeverity.medium: logging.WARNING,
    ErrorSeverity.high: logging.ERROR,
    ErrorSeverity.critical: logging.CRITICAL,
}

# нарушения предусловий: сообщаем, но это не сбой пайплайна
_PRECONDITION_CODES = {
    ErrCode.VALIDATION,
    ErrCode.NOT_FOUND,
    ErrCode.CONFLICT,
    ErrCode.NOT_INITIALIZED,
    ErrCode.NOT_STREAMING,
    ErrCode.SWITCH_IN_PROGRESS,
    ErrCode.SESSION_STATE,
}


@dataclass
class ErrorStats:
    total_errors: int = 0
    errors_by_type: dict[str, int] = field(default_factory=dict)
    errors_by_severity: dict[str, int] = field(default_factory=dict)
    errors_by_provider: dict[str, int] = field(default_factory=dict)
    average_recovery_time: float = 0.0  # мс
    last_error: STTErrorRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "errors_by_type": dict(self.errors_by_type),
            "errors_by_severity": dict(self.errors_by_severity),
            "errors_by_provider": dict(self.errors_by_provider),
            "average_recovery_time": self.average_recovery_time,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


def classify(exc: BaseException, operation: str | None = None) -> tuple[ErrorType, ErrorSeverity]:
    """
    Вывод {type, severity} по исключению.
    """
    if isinstance(exc, ProviderError):
        status = (exc.details or {}).get("status")
        if operation == "initialize":
            return ErrorType.initialization_error, (
                ErrorSeverity.critical if exc.fatal else ErrorSeverity.high
            )
        if exc.fatal and status in (401, 403):
            return ErrorType.authentication_error, ErrorSeverity.critical
        if status == 429:
            return ErrorType.rate_limit_error, ErrorSeverity.medium
        if exc.kind == ProviderErrorKind.network:
            stage = (exc.details or {}).get("stage")
            if stage == "connect":
                return ErrorType.connection_error, ErrorSeverity.medium
            return ErrorType.network_error, ErrorSeverity.medium
        if exc.kind == ProviderErrorKind.timeout:
            return ErrorType.timeout_error, ErrorSeverity.medium
        if exc.fatal:
            return ErrorType.provider_error, ErrorSeverity.critical
        return ErrorType.provider_error, ErrorSeverity.high

    if isinstance(exc, AppError):
        if exc.code in _PRECONDITION_CODES:
            return ErrorType.invalid_request_error, ErrorSeverity.low
        return ErrorType.unknown_error, ErrorSeverity.high

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ErrorType.timeout_error, ErrorSeverity.medium
    if isinstance(exc, ConnectionError):
        return ErrorType.connection_error, ErrorSeverity.medium
    return ErrorType.unknown_error, ErrorSeverity.high


class ErrorTracker:
    def __init__(
        self,
        *,
        capacity: int | None = None,
        threshold: int | None = None,
        threshold_window_sec: float | None = None,
        events: EventChannel | None = None,
    ) -> None:
        s = get_settings()
        self.capacity = capacity or s.error_ledger_capacity
        self.threshold = threshold if threshold is not None else s.error_threshold
        self.threshold_window_sec = (
            threshold_window_sec
            if threshold_window_sec is not None
            else s.error_threshold_window_sec
        )
        self.events = events

        self._lock = threading.Lock()
        self._ledger: deque[STTErrorRecord] = deque(maxlen=self.capacity)
        self._stats = ErrorStats()
        # среднее считаем по сумме и счётчику: память не растёт вместе с историей
        self._recovery_sum_ms = 0.0
        self._recovery_count = 0
        self._threshold_fired_at = None

    # -------------------------------------------------------------------------
    # Запись
    # -------------------------------------------------------------------------
    def capture(
        self,
        exc: BaseException,
        *,
        provider: str | None = None,
        operation: str | None = None,
    ) -> STTErrorRecord:
        """
        Записывает исключение. Повторный capture того же исключения
        (например, при пробросе через несколько слоёв) новой записи не создаёт.
        """
        existing_id = getattr(exc, "stt_error_id", None)
        if existing_id is not None:
            with self._lock:
                for rec in self._ledger:
                    if rec.id == existing_id:
                        return rec

        error_type, severity = classify(exc, operation)
        if provider is None and isinstance(exc, ProviderError):
            provider = exc.provider

        if isinstance(exc, AppError):
            message, code, details = exc.message, exc.code, exc.details
        else:
            message, code, details = str(exc) or type(exc).__name__, ErrCode.INTERNAL, None

        rec = self.record(
            message,
            error_type,
            severity,
            provider=provider,
            operation=operation,
            code=code,
            details=details,
        )
        try:
            exc.stt_error_id = rec.id  # type: ignore[attr-defined]
        except AttributeError:
            pass
        return rec

    def record(
        self,
        message: str,
        error_type: ErrorType = ErrorType.unknown_error,
        severity: ErrorSeverity = ErrorSeverity.medium,
        *,
        provider: str | None = None,
        operation: str | None = None,
        code: str | None = None,
        details: dict | None = None,
    ) -> STTErrorRecord:
        rec = STTErrorRecord(
            id=new_error_id(),
            type=error_type,
            severity=severity,
            message=message,
            timestamp=utc_now(),
            provider=provider,
            operation=operation,
            code=code,
            details=details,
        )

        with self._lock:
            self._ledger.append(rec)
            st = self._stats
            st.total_errors += 1
            st.errors_by_type[error_type.value] = st.errors_by_type.get(error_type.value, 0) + 1
            st.errors_by_severity[severity.value] = (
                st.errors_by_severity.get(severity.value, 0) + 1
            )
            if provider:
                st.errors_by_provider[provider] = st.errors_by_provider.get(provider, 0) + 1
            st.last_error = rec
            burst = self._check_threshold_locked(rec)

        STT_ERRORS_TOTAL.labels(type=error_type.value, severity=severity.value).inc()
        log.log(
            _LOG_LEVELS[severity],
            "stt_error",
            extra={
                "payload": {
                    "error_id": rec.id,
                    "type": error_type.value,
                    "severity": severity.value,
                    "provider": provider,
                    "operation": operation,
                    "message": message[:300],
                }
            },
        )

        if self.events is not None:
            self.events.publish(STTErrorEvent(error=rec.to_dict()))
            if burst is not None:
                self.events.publish(burst)
        return rec

    def _check_threshold_locked(self, rec: STTErrorRecord) -> ErrorThresholdExceededEvent | None:
        if self.threshold <= 0:
            return None
        window = timedelta(seconds=self.threshold_window_sec)
        recent = [e for e in self._ledger if rec.timestamp - e.timestamp < window]
        if len(recent) < self.threshold:
            return None
        # одно событие на окно, иначе каждая следующая ошибка даёт дубль
        if self._threshold_fired_at is not None and rec.timestamp - self._threshold_fired_at < window:
            return None
        self._threshold_fired_at = rec.timestamp

        log.warning(
            "error_threshold_exceeded",
            extra={
                "payload": {
                    "count": len(recent),
                    "threshold": self.threshold,
                    "window_sec": self.threshold_window_sec,
                }
            },
        )
        return ErrorThresholdExceededEvent(
            count=len(recent),
            threshold=self.threshold,
            window_sec=self.threshold_window_sec,
            error_ids=[e.id for e in recent],
        )

    def record_success(self, provider: str) -> int:
        """
        Успешный вызов провайдера закрывает окна восстановления его ошибок.
        Возвращает количество закрытых записей.
        """
        now = utc_now()
        closed = 0
        with self._lock:
            for rec in self._ledger:
                if rec.provider != provider or rec.recovered_at is not None:
                    continue
                rec.recovered_at = now
                self._recovery_sum_ms += (now - rec.timestamp).total_seconds() * 1000
                self._recovery_count += 1
                closed += 1
            if closed:
                self._stats.average_recovery_time = self._recovery_sum_ms / self._recovery_count
        return closed

    # -------------------------------------------------------------------------
    # Чтение / управление
    # -------------------------------------------------------------------------
    def stats(self) -> ErrorStats:
        with self._lock:
            st = self._stats
            return ErrorStats(
                total_errors=st.total_errors,
                errors_by_type=dict(st.errors_by_type),
                errors_by_severity=dict(st.errors_by_severity),
                errors_by_provider=dict(st.errors_by_provider),
                average_recovery_time=st.average_recovery_time,
                last_error=st.last_error,
            )

    def recent(self, count: int = 10) -> list[STTErrorRecord]:
        """Последние count записей, от старых к новым."""
        if count <= 0:
            return []
        with self._lock:
            return list(self._ledger)[-count:]

    def get(self, error_id: str) -> STTErrorRecord | None:
        with self._lock:
            for rec in self._ledger:
                if rec.id == error_id:
                    return rec
        return None

    def resolve(self, error_id: str) -> bool:
        """
        Помечает запись решённой. Из журнала запись не удаляется.
        False: записи нет (неизвестный id или уже вытеснена).
        """
        with self._lock:
            for rec in self._ledger:
                if rec.id == error_id:
                    rec.resolved = True
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._stats = ErrorStats()
            self._recovery_sum_ms = 0.0
            self._recovery_count = 0
            self._threshold_fired_at = None
        log.info("error_ledger_cleared")

    def by_type(self, error_type: ErrorType) -> list[STTErrorRecord]:
        with self._lock:
            return [e for e in self._ledger if e.type == error_type]

    def by_provider(self, provider: str) -> list[STTErrorRecord]:
        with self._lock:
            return [e for e in self._ledger if e.provider == provider]

    def by_severity(self, severity: ErrorSeverity) -> list[STTErrorRecord]:
        with self._lock:
            return [e for e in self._ledger if e.severity == severity]

    def __len__(self) -> int:
        return len(self._ledger)
