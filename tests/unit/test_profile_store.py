from __future__ import annotations

import asyncio
import json

import pytest

from stt_orchestrator.common.config import get_settings
from stt_orchestrator.common.errors import (
    ConflictError,
    NotFoundError,
    ProviderError,
    SwitchInProgressError,
    ValidationError,
)
from stt_orchestrator.domain.enums import ProviderType
from stt_orchestrator.services.profile_store import ProfileStore


class FakeManager:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.applied = []

    async def configure(self, config) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderError("unavailable", "не поднялся")
        self.applied.append(config)


def _store(tmp_path, **kw) -> ProfileStore:
    kw.setdefault("autosave", False)
    kw.setdefault("backup_enabled", False)
    return ProfileStore(tmp_path / "profiles.json", **kw)


def _engine(provider: str = "mock", **kw) -> dict:
    return {"defaultProvider": provider, "retryAttempts": 1, **kw}


def test_create_rejects_invalid_profiles(tmp_path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValidationError):
        store.create("   ", _engine())
    with pytest.raises(ValidationError):
        store.create("x", _engine(fallbackProvider="carrier_pigeon"))
    with pytest.raises(ValidationError):
        store.create("x", _engine(maxConcurrentRequests=0))
    with pytest.raises(ValidationError):
        store.create("x", _engine(providers={"mock": {"kind": "openai_compat"}}))

    assert store.list_profiles() == []


def test_create_fills_missing_provider_configs(tmp_path) -> None:
    store = _store(tmp_path)
    p = store.create("Основной", _engine(fallbackProvider="openai_compat", autoSwitch=True))

    assert set(p.engine_config.providers) == {ProviderType.mock, ProviderType.openai_compat}
    assert p.created_at == p.updated_at


def test_filled_openai_config_does_not_persist_secrets(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "openai_api_key", "sk-SECRET")
    monkeypatch.setattr(get_settings(), "openai_api_base", "http://stt.local/v1")
    store = _store(tmp_path)
    p = store.create("cloud", {"defaultProvider": "openai_compat"})
    store.save()

    assert "sk-SECRET" not in store.export(p.id)
    assert "sk-SECRET" not in (tmp_path / "profiles.json").read_text(encoding="utf-8")
    assert p.engine_config.providers[ProviderType.openai_compat].api_key == ""


def test_export_import_roundtrip(tmp_path) -> None:
    store = _store(tmp_path)
    p = store.create("Встречи", _engine(), {"language": "ru"}, description="для созвонов")

    exported = store.export(p.id)
    assert '"engineConfig"' in exported
    assert '"defaultOptions"' in exported

    imported = store.import_profile(exported)
    assert imported.id != p.id
    assert imported.model_dump(exclude={"id"}) == p.model_dump(exclude={"id"})
    assert len(store.list_profiles()) == 2


@pytest.mark.parametrize("payload", ["{not json", "[1, 2]", '{"name": "x"}'])
def test_malformed_import_leaves_store_unchanged(tmp_path, payload) -> None:
    store = _store(tmp_path)
    store.create("a", _engine())

    with pytest.raises(ValidationError):
        store.import_profile(payload)
    assert len(store.list_profiles()) == 1


def test_update_and_duplicate(tmp_path) -> None:
    store = _store(tmp_path)
    p = store.create("a", _engine())

    upd = store.update(p.id, name="b", engine_config=_engine(retryAttempts=5))
    assert upd.name == "b"
    assert upd.engine_config.retry_attempts == 5
    assert upd.created_at == p.created_at
    assert upd.updated_at >= p.updated_at

    with pytest.raises(ValidationError):
        store.update(p.id, name="")
    assert store.get(p.id).name == "b"

    copy = store.duplicate(p.id)
    assert copy.id != p.id
    assert copy.name == "b (копия)"
    assert copy.engine_config == upd.engine_config


def test_delete_rules(tmp_path) -> None:
    async def run():
        store = _store(tmp_path, manager=FakeManager())
        a = store.create("a", _engine())
        b = store.create("b", _engine())
        await store.switch(a.id)

        with pytest.raises(ConflictError):
            store.delete(a.id)
        with pytest.raises(NotFoundError):
            store.delete("profile_missing")

        store.delete(b.id)
        assert [p.id for p in store.list_profiles()] == [a.id]

    asyncio.run(run())


def test_switch_applies_engine_then_sets_current(tmp_path) -> None:
    async def run():
        manager = FakeManager()
        store = _store(tmp_path, manager=manager)
        p = store.create("a", _engine())

        with pytest.raises(NotFoundError):
            await store.switch("profile_missing")
        assert manager.applied == []

        await store.switch(p.id)
        assert store.current_id == p.id
        assert manager.applied == [p.engine_config]

    asyncio.run(run())


def test_failed_switch_keeps_previous_profile(tmp_path) -> None:
    async def run():
        manager = FakeManager()
        store = _store(tmp_path, manager=manager)
        a = store.create("a", _engine())
        b = store.create("b", _engine())
        await store.switch(a.id)

        manager.fail = True
        with pytest.raises(ProviderError):
            await store.switch(b.id)
        assert store.current_id == a.id

    asyncio.run(run())


def test_concurrent_profile_switch_rejected(tmp_path) -> None:
    async def run():
        store = _store(tmp_path, manager=FakeManager(delay=0.05))
        a = store.create("a", _engine())
        b = store.create("b", _engine())

        results = await asyncio.gather(store.switch(a.id), store.switch(b.id), return_exceptions=True)

        assert results[0].id == a.id
        assert isinstance(results[1], SwitchInProgressError)
        assert store.current_id == a.id

    asyncio.run(run())


def test_save_and_reload(tmp_path) -> None:
    async def run():
        store = _store(tmp_path, manager=FakeManager())
        p = store.create("a", _engine(), {"language": "en"})
        await store.switch(p.id)
        store.save()

        raw = json.loads((tmp_path / "profiles.json").read_text(encoding="utf-8"))
        assert set(raw) == {"profiles", "currentProfileId"}
        assert raw["currentProfileId"] == p.id
        assert raw["profiles"][0]["engineConfig"]["defaultProvider"] == "mock"

        again = ProfileStore.open(tmp_path / "profiles.json", autosave=False)
        assert again.current_id == p.id
        assert again.get(p.id) == p

    asyncio.run(run())


def test_missing_file_is_empty_store(tmp_path) -> None:
    store = ProfileStore.open(tmp_path / "nope.json")
    assert store.list_profiles() == []
    assert store.current() is None


def test_corrupt_file_keeps_state(tmp_path) -> None:
    store = _store(tmp_path)
    p = store.create("a", _engine())
    store.save()

    (tmp_path / "profiles.json").write_text('{"profiles": [{"id": 1}]}', encoding="utf-8")
    with pytest.raises(ValidationError):
        store.reload()
    assert store.get(p.id).name == "a"


def test_autosave_with_backup_rotation(tmp_path) -> None:
    store = _store(tmp_path, autosave=True, backup_enabled=True, max_backups=2)
    for i in range(5):
        store.create(f"p{i}", _engine())

    backups = list((tmp_path / "backups").glob("profiles-*.json"))
    assert len(backups) == 2
    assert len(ProfileStore.open(tmp_path / "profiles.json").list_profiles()) == 5


def test_reset_persists_empty_store(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("a", _engine())
    store.reset()

    raw = json.loads((tmp_path / "profiles.json").read_text(encoding="utf-8"))
    assert raw == {"profiles": [], "currentProfileId": None}
    assert store.current() is None
