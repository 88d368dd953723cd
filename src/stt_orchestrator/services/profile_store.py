"""
Хранилище профилей STT.

Профиль = {engine_config, default_options} под именем.
Ровно один профиль текущий (или ни одного после reset).

Персистентность:
- файл {profiles: [...], currentProfileId} в camelCase
- запись атомарная (временный файл + os.replace), с ротацией бэкапов
- файл трогают только save()/reload()/reset(); autosave вызывает save()

Переключение профиля атомарно: сначала ProviderManager применяет engine_config,
и только при успехе профиль становится текущим.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path

from pydantic import Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import (
    ConflictError,
    NotFoundError,
    StorageError,
    SwitchInProgressError,
    ValidationError,
)
from stt_orchestrator.common.ids import new_profile_id
from stt_orchestrator.common.logging import get_project_logger
from stt_orchestrator.common.time import utc_now
from stt_orchestrator.stt.config import CamelModel, EngineConfig, TranscriptionOptions

log = get_project_logger()


# =============================================================================
# МОДЕЛИ
# =============================================================================
class STTProfile(CamelModel):
    id: str
    name: str
    description: str | None = None
    engine_config: EngineConfig
    default_options: TranscriptionOptions = Field(default_factory=TranscriptionOptions)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("profile name must not be blank")
        return v


class ProfileStoreData(CamelModel):
    profiles: list[STTProfile] = Field(default_factory=list)
    current_profile_id: str | None = None


def _validation_details(e: PydanticValidationError) -> dict:
    return {
        "errors": [
            {"loc": ".".join(str(x) for x in err["loc"]), "msg": err["msg"]}
            for err in e.errors()[:10]
        ]
    }


# =============================================================================
# ХРАНИЛИЩЕ
# =============================================================================
class ProfileStore:
    def __init__(
        self,
        path: str | Path | None = None,
        *,
        autosave: bool | None = None,
        backup_enabled: bool | None = None,
        max_backups: int | None = None,
        manager=None,
    ) -> None:
        s = get_settings()
        self.path = Path(path or s.stt_profiles_path)
        self.autosave = s.stt_profiles_autosave if autosave is None else autosave
        self.backup_enabled = (
            s.stt_profiles_backup_enabled if backup_enabled is None else backup_enabled
        )
        self.max_backups = s.stt_profiles_max_backups if max_backups is None else max_backups
        self.manager = manager

        self._lock = threading.RLock()
        self._switch_lock = asyncio.Lock()
        self._profiles: dict[str, STTProfile] = {}
        self._current_id: str | None = None

    @classmethod
    def open(cls, path: str | Path | None = None, **kwargs) -> ProfileStore:
        store = cls(path, **kwargs)
        store.reload()
        return store

    @property
    def backup_dir(self) -> Path:
        return self.path.parent / "backups"

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------
    def create(
        self,
        name: str,
        engine_config: EngineConfig | dict,
        default_options: TranscriptionOptions | dict | None = None,
        description: str | None = None,
    ) -> STTProfile:
        now = utc_now()
        try:
            profile = STTProfile(
                id=new_profile_id(),
                name=name,
                description=description,
                engine_config=EngineConfig.model_validate(engine_config),
                default_options=TranscriptionOptions.model_validate(default_options or {}),
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise ValidationError("Некорректный профиль", _validation_details(e)) from e

        with self._lock:
            self._profiles[profile.id] = profile
        log.info("profile_created", extra={"payload": {"profile_id": profile.id, "name": name}})
        self._autosave()
        return profile

    def get(self, profile_id: str) -> STTProfile:
        with self._lock:
            profile = self._profiles.get(profile_id)
        if profile is None:
            raise NotFoundError("Профиль не найден", details={"profile_id": profile_id})
        return profile

    def list_profiles(self) -> list[STTProfile]:
        with self._lock:
            return sorted(self._profiles.values(), key=lambda p: p.created_at)

    def current(self) -> STTProfile | None:
        with self._lock:
            if self._current_id is None:
                return None
            return self._profiles.get(self._current_id)

    @property
    def current_id(self) -> str | None:
        return self._current_id

    def update(
        self,
        profile_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        engine_config: EngineConfig | dict | None = None,
        default_options: TranscriptionOptions | dict | None = None,
    ) -> STTProfile:
        """
        Частичное обновление. Текущий профиль на лету не переприменяется:
        новые настройки вступят в силу при следующем switch().
        """
        existing = self.get(profile_id)
        patch: dict = {"updated_at": utc_now()}
        if name is not None:
            patch["name"] = name
        if description is not None:
            patch["description"] = description
        if engine_config is not None:
            patch["engine_config"] = engine_config
        if default_options is not None:
            patch["default_options"] = default_options

        data = existing.model_dump()
        data.update(patch)
        try:
            updated = STTProfile.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError("Некорректный профиль", _validation_details(e)) from e

        with self._lock:
            self._profiles[profile_id] = updated
        log.info(
            "profile_updated",
            extra={"payload": {"profile_id": profile_id, "fields": sorted(patch)}},
        )
        self._autosave()
        return updated

    def delete(self, profile_id: str) -> None:
        with self._lock:
            if profile_id not in self._profiles:
                raise NotFoundError("Профиль не найден", details={"profile_id": profile_id})
            if profile_id == self._current_id:
                raise ConflictError(
                    "Нельзя удалить текущий профиль, сначала переключитесь на другой",
                    details={"profile_id": profile_id},
                )
            del self._profiles[profile_id]
        log.info("profile_deleted", extra={"payload": {"profile_id": profile_id}})
        self._autosave()

    def duplicate(self, profile_id: str, name: str | None = None) -> STTProfile:
        src = self.get(profile_id)
        now = utc_now()
        copy = src.model_copy(
            deep=True,
            update={
                "id": new_profile_id(),
                "name": name or f"{src.name} (копия)",
                "created_at": now,
                "updated_at": now,
            },
        )
        with self._lock:
            self._profiles[copy.id] = copy
        log.info(
            "profile_duplicated",
            extra={"payload": {"source_id": profile_id, "profile_id": copy.id}},
        )
        self._autosave()
        return copy

    # -------------------------------------------------------------------------
    # Переключение
    # -------------------------------------------------------------------------
    async def switch(self, profile_id: str) -> STTProfile:
        if self._switch_lock.locked():
            raise SwitchInProgressError(details={"profile_id": profile_id})

        async with self._switch_lock:
            profile = self.get(profile_id)
            if self.manager is not None:
                # ошибка здесь оставляет прежний профиль текущим
                await self.manager.configure(profile.engine_config)
            with self._lock:
                prev = self._current_id
                self._current_id = profile.id

        log.info(
            "profile_switched",
            extra={"payload": {"from": prev, "to": profile.id, "name": profile.name}},
        )
        self._autosave()
        return profile

    # -------------------------------------------------------------------------
    # Экспорт / импорт
    # -------------------------------------------------------------------------
    def export(self, profile_id: str) -> str:
        profile = self.get(profile_id)
        return profile.model_dump_json(by_alias=True, indent=2)

    def import_profile(self, serialized: str) -> STTProfile:
        """
        Импорт профиля под новым id. Кривые данные → ValidationError, хранилище не меняется.
        """
        try:
            raw = json.loads(serialized)
        except (TypeError, ValueError) as e:
            raise ValidationError("Импорт: невалидный JSON", {"err": str(e)[:200]}) from e
        if not isinstance(raw, dict):
            raise ValidationError("Импорт: ожидается объект профиля")

        raw["id"] = new_profile_id()
        try:
            profile = STTProfile.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError("Импорт: некорректный профиль", _validation_details(e)) from e

        with self._lock:
            self._profiles[profile.id] = profile
        log.info("profile_imported", extra={"payload": {"profile_id": profile.id}})
        self._autosave()
        return profile

    # -------------------------------------------------------------------------
    # Персистентность
    # -------------------------------------------------------------------------
    def _snapshot(self) -> ProfileStoreData:
        with self._lock:
            return ProfileStoreData(
                profiles=list(self._profiles.values()), current_profile_id=self._current_id
            )

    def _autosave(self) -> None:
        if self.autosave:
            self.save()

    def save(self) -> Path:
        body = self._snapshot().model_dump_json(by_alias=True, indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.backup_enabled and self.path.exists():
                self._backup()

            fd, tmp = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(body)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            log.error(
                "profiles_save_failed",
                extra={"payload": {"path": str(self.path), "err": str(e)[:200]}},
            )
            raise StorageError(details={"path": str(self.path), "err": str(e)[:200]}) from e

        log.info("profiles_saved", extra={"payload": {"path": str(self.path)}})
        return self.path

    def _backup(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        ts = utc_now().strftime("%Y%m%dT%H%M%S%f")
        shutil.copy2(self.path, self.backup_dir / f"{self.path.stem}-{ts}.json")

        backups = sorted(
            self.backup_dir.glob(f"{self.path.stem}-*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in backups[max(0, self.max_backups) :]:
            old.unlink(missing_ok=True)

    def reload(self) -> None:
        """
        Перечитывает файл. Нет файла → пустое хранилище.
        Кривой файл → ValidationError, состояние в памяти не меняется.
        """
        if not self.path.exists():
            with self._lock:
                self._profiles = {}
                self._current_id = None
            log.info("profiles_file_missing", extra={"payload": {"path": str(self.path)}})
            return

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(details={"path": str(self.path), "err": str(e)[:200]}) from e
        try:
            data = ProfileStoreData.model_validate_json(text)
        except PydanticValidationError as e:
            raise ValidationError("Файл профилей повреждён", _validation_details(e)) from e

        profiles = {p.id: p for p in data.profiles}
        current = data.current_profile_id if data.current_profile_id in profiles else None
        with self._lock:
            self._profiles = profiles
            self._current_id = current
        log.info(
            "profiles_loaded",
            extra={"payload": {"path": str(self.path), "count": len(profiles)}},
        )

    def reset(self) -> None:
        with self._lock:
            self._profiles = {}
            self._current_id = None
        log.warning("profiles_reset", extra={"payload": {"path": str(self.path)}})
        self.save()
