"""Tests for the Settings record store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from vdctl.domain.errors import ConfigInvalidError
from vdctl.domain.lifecycle import InstallState
from vdctl.domain.records import Settings
from vdctl.infrastructure.settings_store import SettingsStore


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "virtual_display_id": "oem7.inf",
        "config_path": "C:/Sunshine/config/sunshine.conf",
        "service_name": "SunshineService",
        "install_timestamp": "2026-03-01T12:00:00+00:00",
    }
    values.update(overrides)
    return Settings(**values)


class TestSettingsStore:
    def test_missing_means_not_provisioned(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path)
        assert store.exists() is False
        assert store.load() is None

    def test_save_writes_camel_case_json(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path / "state")
        store.save(_settings())
        raw = json.loads(store.path.read_text(encoding="utf-8"))
        assert raw["virtualDisplayId"] == "oem7.inf"
        assert raw["installState"] == "settings_persisted"
        assert raw["schemaVersion"] == 1

    def test_round_trip(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path)
        store.save(_settings(install_state=InstallState.COMMITTED))
        loaded = store.load()
        assert loaded is not None
        assert loaded.virtual_display_id == "oem7.inf"
        assert loaded.install_state is InstallState.COMMITTED

    def test_unknown_keys_survive_rewrite(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path)
        store.save(_settings())
        raw = json.loads(store.path.read_text(encoding="utf-8"))
        raw["addedByNewerVersion"] = {"x": 1}
        store.path.write_text(json.dumps(raw), encoding="utf-8")

        loaded = store.load()
        assert loaded is not None
        store.save(loaded)
        rewritten = json.loads(store.path.read_text(encoding="utf-8"))
        assert rewritten["addedByNewerVersion"] == {"x": 1}

    @pytest.mark.parametrize("content", ["{not json", "[]", '{"virtualDisplayId": "x"}'])
    def test_malformed_is_config_invalid(self, tmp_path: Path, content: str) -> None:
        store = SettingsStore(tmp_path)
        store.path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigInvalidError):
            store.load()

    def test_delete_is_idempotent(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path)
        store.save(_settings())
        store.delete()
        store.delete()
        assert store.exists() is False

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path)
        store.save(_settings())
        store.save(_settings(virtual_display_id="oem8.inf"))
        assert [p.name for p in tmp_path.iterdir()] == ["settings.json"]
