"""
Доменные модели потокового распознавания.

Назначение:
- AudioChunk: порция PCM, которую буфер отдаёт провайдеру
- TranscriptionResult: неизменяемый ответ провайдера
- TranscriptSegment / Speaker / AggregatorSession: состояние агрегатора
- ProviderStatus / STTErrorRecord: наблюдаемое состояние для внешних потребителей
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from .enums import ErrorSeverity, ErrorType, ProviderState, ProviderType


@dataclass(frozen=True)
class AudioChunk:
    """
    Чанк аудио. Принадлежит буферу до передачи провайдеру, дальше не мутируется.
    """

    sequence_id: int
    data: bytes
    start_time: float
    end_time: float
    sample_rate: int = 16000
    channels: int = 1
    bit_depth: int = 16
    is_flush: bool = False

    @property
    def duration(self) -> float:
        bytes_per_sec = self.sample_rate * self.channels * (self.bit_depth // 8)
        if bytes_per_sec <= 0:
            return 0.0
        return len(self.data) / bytes_per_sec


@dataclass(frozen=True)
class ResultSegment:
    text: str
    start_offset: float
    end_offset: float
    avg_log_prob: float
    speaker: str | None = None


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    segments: tuple[ResultSegment, ...] = ()
    language: str | None = None
    is_final: bool = True
    provider: ProviderType | None = None


@dataclass
class TranscriptSegment:
    id: str
    start_time: float
    end_time: float
    text: str
    confidence: float
    is_final: bool
    timestamp: float
    speaker_id: str | None = None
    language: str | None = None
    sequence_id: int | None = None

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)

    def same_range(self, other: TranscriptSegment) -> bool:
        return self.start_time == other.start_time and self.end_time == other.end_time

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Speaker:
    id: str
    name: str | None = None
    color: str | None = None
    total_segments: int = 0
    total_duration: float = 0.0
    average_confidence: float = 0.0


@dataclass
class AggregatorSession:
    id: str
    is_active: bool
    started_at: float
    stopped_at: float | None = None
    segments: list[TranscriptSegment] = field(default_factory=list)
    speakers: dict[str, Speaker] = field(default_factory=dict)


@dataclass
class ProviderStatus:
    type: ProviderType
    name: str
    is_initialized: bool
    is_streaming: bool
    is_available: bool
    state: ProviderState = ProviderState.uninitialized
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type.value
        d["state"] = self.state.value
        return d


@dataclass
class STTErrorRecord:
    id: str
    type: ErrorType
    severity: ErrorSeverity
    message: str
    timestamp: datetime
    provider: str | None = None
    operation: str | None = None
    code: str | None = None
    details: dict | None = None
    resolved: bool = False
    recovered_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "provider": self.provider,
            "operation": self.operation,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved,
            "recovered_at": self.recovered_at.isoformat() if self.recovered_at else None,
        }
