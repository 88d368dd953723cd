"""
Очередь восстановления порядка чанков.

Чанки распознаются параллельно и завершаются в произвольном порядке,
а агрегатор должен получать результаты строго по sequence_id.
Результат N+1 удерживается, пока не придёт результат N или разрыв (None).
"""

from __future__ import annotations

import threading
from typing import Any


class SequenceReorderQueue:
    def __init__(self, first_seq: int = 1) -> None:
        self._lock = threading.Lock()
        self._next = first_seq
        self._pending: dict[int, Any] = {}

    @property
    def next_seq(self) -> int:
        return self._next

    @property
    def pending(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)

    def complete(self, seq: int, payload: Any | None) -> list[tuple[int, Any | None]]:
        """
        Отмечает чанк завершённым. payload=None: разрыв (ошибка/таймаут/тишина).
        Возвращает [(seq, payload), ...], которые можно отдавать дальше по порядку.
        Повтор или опоздавший seq игнорируется.
        """
        with self._lock:
            if seq < self._next or seq in self._pending:
                return []
            self._pending[seq] = payload
            released: list[tuple[int, Any | None]] = []
            while self._next in self._pending:
                released.append((self._next, self._pending.pop(self._next)))
                self._next += 1
            return released

    def reset(self, first_seq: int = 1) -> None:
        with self._lock:
            self._next = first_seq
            self._pending.clear()
