# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

import pytest

from state.settings import DEFAULT_ENABLED_SERVICES, DEFAULT_FETCH_TIMEOUT, SettingsStore, StaticSettings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("QUOTAWATCH_ENABLED_SERVICES", "QUOTAWATCH_REFRESH_INTERVAL", "QUOTAWATCH_SETTINGS_PATH"):
        monkeypatch.delenv(var, raising=False)


def _write(tmp_path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_reads_yaml(tmp_path):
    path = _write(
        tmp_path,
        """
enabled_services: [cursor, claude, cursor]
refresh_interval: 2
fetch_timeout: 30
services:
  cursor:
    retry:
      max_attempts: 5
""",
    )
    store = SettingsStore(path)
    assert store.get_enabled_services() == ["cursor", "claude"]
    assert store.get_refresh_interval() == 2.0
    assert store.get_fetch_timeout() == 30.0
    assert store.get_service_options("cursor") == {"retry": {"max_attempts": 5}}
    assert store.get_service_options("claude") == {}


def test_file_is_reread_on_every_call(tmp_path):
    path = _write(tmp_path, "enabled_services: [cursor]\n")
    store = SettingsStore(path)
    assert store.get_enabled_services() == ["cursor"]
    _write(tmp_path, "enabled_services: [cursor, zai]\n")
    assert store.get_enabled_services() == ["cursor", "zai"]


def test_env_overrides_file(tmp_path, monkeypatch):
    path = _write(tmp_path, "enabled_services: [cursor]\nrefresh_interval: 2\n")
    monkeypatch.setenv("QUOTAWATCH_ENABLED_SERVICES", "claude, codex,")
    monkeypatch.setenv("QUOTAWATCH_REFRESH_INTERVAL", "9")
    store = SettingsStore(path)
    assert store.get_enabled_services() == ["claude", "codex"]
    assert store.get_refresh_interval() == 9.0


def test_missing_or_broken_file_uses_defaults(tmp_path):
    missing = SettingsStore(str(tmp_path / "nope.yaml"))
    assert missing.get_enabled_services() == DEFAULT_ENABLED_SERVICES
    assert missing.get_fetch_timeout() == DEFAULT_FETCH_TIMEOUT

    broken = SettingsStore(_write(tmp_path, "enabled_services: [unclosed\n"))
    assert broken.get_enabled_services() == DEFAULT_ENABLED_SERVICES

    scalar = SettingsStore(_write(tmp_path, "just a string\n"))
    assert scalar.get_service_options("cursor") == {}


def test_bad_numbers_fall_back(tmp_path):
    store = SettingsStore(_write(tmp_path, "refresh_interval: soon\nfetch_timeout: null\n"))
    assert store.get_refresh_interval() == 5.0
    assert store.get_fetch_timeout() == DEFAULT_FETCH_TIMEOUT


def test_static_settings():
    settings = StaticSettings(enabled_services=["a", "a", "b"], fetch_timeout=1, services={"a": {"timeout": 3}})
    assert settings.get_enabled_services() == ["a", "b"]
    assert settings.get_fetch_timeout() == 1.0
    assert settings.get_service_options("a") == {"timeout": 3}
