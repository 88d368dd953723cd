"""
Канал исходящих событий.

Назначение:
- точка подписки для внешних потребителей (UI, персистентность)
- вместо общего мутабельного emitter'а каждый компонент получает канал явно
- события доставляются строго в порядке publish()

Подписка двумя способами:
- subscribe(handler): синхронный callback
- stream(): asyncio.Queue для асинхронного потребителя
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from typing import Any

from stt_orchestrator.common.logging import get_project_logger

log = get_project_logger()

Handler = Callable[[Any], None]


class EventChannel:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[tuple[str | None, Handler]] = []
        self._queues: list[tuple[str | None, asyncio.Queue]] = []

    def subscribe(self, handler: Handler, event_type: str | None = None) -> Callable[[], None]:
        """
        Регистрирует обработчик. Возвращает функцию отписки.
        event_type=None: все события.
        """
        entry = (event_type, handler)
        with self._lock:
            self._handlers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return _unsubscribe

    def stream(self, event_type: str | None = None, maxsize: int = 0) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        with self._lock:
            self._queues.append((event_type, q))
        return q

    def close_stream(self, q: asyncio.Queue) -> None:
        with self._lock:
            self._queues = [(t, x) for t, x in self._queues if x is not q]

    def publish(self, event: Any) -> None:
        event_type = getattr(event, "event_type", None)
        with self._lock:
            handlers = [h for t, h in self._handlers if t is None or t == event_type]
            queues = [q for t, q in self._queues if t is None or t == event_type]

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # падение подписчика не должно ломать пайплайн
                log.warning(
                    "event_handler_failed",
                    extra={"payload": {"event_type": event_type, "err": str(e)[:200]}},
                )

        for q in queues:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                log.warning(
                    "event_stream_overflow",
                    extra={"payload": {"event_type": event_type, "qsize": q.qsize()}},
                )
