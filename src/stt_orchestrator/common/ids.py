"""
Генерация идентификаторов.

Назначение:
- profile_id / session_id / segment_id / error_id
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime


def _stamped(prefix: str, nbytes: int) -> str:
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    return f"{prefix}_{ts}_{secrets.token_hex(nbytes)}"


def new_profile_id(prefix: str = "profile") -> str:
    """
    Идентификатор профиля.
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    return _stamped(prefix, 5)


def new_session_id(prefix: str = "session") -> str:
    """Идентификатор сессии агрегатора."""
    return _stamped(prefix, 5)


def new_segment_id(prefix: str = "seg") -> str:
    """Идентификатор сегмента транскрипта (уникален в рамках сессии)."""
    return f"{prefix}_{secrets.token_hex(8)}"


def new_error_id(prefix: str = "err") -> str:
    """Идентификатор записи в журнале ошибок."""
    return _stamped(prefix, 6)
