"""
Контракты исходящих событий (runtime, Python-описание).

Зачем:
- удобные именованные поля/ключи
- единая точка, чтобы не разъезжались названия событий
- порядок доставки обеспечивает EventChannel (один потребитель на сессию)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

EVENTS_SCHEMA_VERSION = "v1"

# =============================================================================
# ТИПЫ СОБЫТИЙ
# =============================================================================
EventType = Literal[
    "segmentAdded",
    "batchProcessed",
    "sessionStarted",
    "sessionStopped",
    "streamingStatus",
    "sttError",
    "providerSwitched",
    "errorThresholdExceeded",
]


@dataclass
class _Event:
    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["schema_version"] = EVENTS_SCHEMA_VERSION
        return payload


# =============================================================================
# АГРЕГАТОР
# =============================================================================
@dataclass
class SegmentAddedEvent(_Event):
    session_id: str
    segment: dict[str, Any]
    superseded_id: str | None = None
    event_type: Literal["segmentAdded"] = "segmentAdded"


@dataclass
class BatchProcessedEvent(_Event):
    session_id: str
    transcript: dict[str, Any]
    event_type: Literal["batchProcessed"] = "batchProcessed"


@dataclass
class SessionStartedEvent(_Event):
    session_id: str
    started_at: float
    event_type: Literal["sessionStarted"] = "sessionStarted"


@dataclass
class SessionStoppedEvent(_Event):
    session_id: str
    stopped_at: float
    transcript: dict[str, Any] | None = None
    event_type: Literal["sessionStopped"] = "sessionStopped"


# =============================================================================
# СТРИМИНГ / ПРОВАЙДЕРЫ
# =============================================================================
@dataclass
class StreamingStatusEvent(_Event):
    is_streaming: bool
    provider: str | None
    event_type: Literal["streamingStatus"] = "streamingStatus"


@dataclass
class ProviderSwitchedEvent(_Event):
    source: str | None
    target: str
    reason: str
    event_type: Literal["providerSwitched"] = "providerSwitched"


# =============================================================================
# ОШИБКИ
# =============================================================================
@dataclass
class STTErrorEvent(_Event):
    error: dict[str, Any]
    event_type: Literal["sttError"] = "sttError"


@dataclass
class ErrorThresholdExceededEvent(_Event):
    count: int
    threshold: int
    window_sec: float
    error_ids: list[str] = field(default_factory=list)
    event_type: Literal["errorThresholdExceeded"] = "errorThresholdExceeded"


Event = (
    SegmentAddedEvent
    | BatchProcessedEvent
    | SessionStartedEvent
    | SessionStoppedEvent
    | StreamingStatusEvent
    | ProviderSwitchedEvent
    | STTErrorEvent
    | ErrorThresholdExceededEvent
)
