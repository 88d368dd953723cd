"""
Утилиты времени.

Назначение:
- единый формат времени (ISO UTC) для профилей
- секунды wall-clock для таймкодов чанков/сегментов
- монотонное время для окон ретраев и latency
"""

from __future__ import annotations

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def wall_clock() -> float:
    """
    Wall-clock в секундах (epoch), для start_time/end_time чанков.
    """
    return time.time()


def monotonic() -> float:
    return time.monotonic()
