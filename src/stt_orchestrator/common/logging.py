"""
Логирование проекта.

- JSON по умолчанию, text для локальной отладки (LOG_FORMAT)
- доп. поля передаются через extra={"payload": {...}}
- пишем в stderr: stdout у apps/stt_stream занят потоком событий (JSON lines)
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from stt_orchestrator.common.config import get_settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict):
            payload["payload"] = extra_payload
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """
    Человекочитаемый формат: payload дописывается парами key=value.
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict) and extra_payload:
            pairs = " ".join(f"{k}={v}" for k, v in extra_payload.items())
            line = f"{line} | {pairs}"
        return line


def _build_formatter() -> logging.Formatter:
    s = get_settings()
    if (s.log_format or "").lower() == "text":
        return TextFormatter()
    return JsonFormatter()


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Не плодим хэндлеры при повторном вызове
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter())
    root.addHandler(handler)

    # faster-whisper пишет прогресс декодирования на INFO
    logging.getLogger("faster_whisper").setLevel(max(level, logging.WARNING))


def get_project_logger(name: str = "stt-orchestrator") -> logging.Logger:
    return logging.getLogger(name)


def get_provider_logger() -> logging.Logger:
    """
    Отдельный логгер для адаптеров провайдеров (удобно фильтровать шумные вызовы).
    """
    return logging.getLogger("stt-orchestrator.provider")
