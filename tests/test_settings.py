"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from termagent.ai.errors import ConfigurationError
from termagent.ai.mcp import TransportKind
from termagent.services.settings import SecretVault, Settings, SettingsStore, redact_secret


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    settings = _store(tmp_path).load()

    assert settings == Settings()
    assert settings.max_tool_calls_per_turn == 25
    assert settings.builtin_providers == ["file-system", "terminal", "todos"]


def test_save_and_load_roundtrip_encrypts_the_api_key(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = Settings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="gpt-4.1-mini",
        context_mode="summarize",
        confirm_tools=["todos__create_todos"],
        mcp_servers={"docs": {"url": "http://localhost:9000/mcp"}},
        default_headers={"X-Test": "1"},
    )

    path = store.save(original)
    raw = json.loads(path.read_text(encoding="utf-8"))

    assert "api_key" not in raw
    assert raw["api_key_ciphertext"].startswith("fernet:")
    assert "super-secret" not in path.read_text(encoding="utf-8")
    assert raw["version"] == 1
    assert store.load() == original


def test_plaintext_api_key_is_migrated(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text(json.dumps({"api_key": "legacy-key", "model": "m"}), encoding="utf-8")

    settings = store.load()

    assert settings.api_key == "legacy-key"
    assert settings.model == "m"
    migrated = json.loads(store.path.read_text(encoding="utf-8"))
    assert "api_key" not in migrated
    assert migrated["api_key_ciphertext"].startswith("fernet:")


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text("{not json", encoding="utf-8")

    assert store.load() == Settings()


def test_cli_overrides_then_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store(tmp_path)
    monkeypatch.setenv("TERMAGENT_MODEL", "env-model")
    monkeypatch.setenv("TERMAGENT_AUTO_APPROVE", "yes")
    monkeypatch.setenv("TERMAGENT_MAX_TOOL_CALLS", "10")
    monkeypatch.setenv("TERMAGENT_TEMPERATURE", "not-a-number")

    settings = store.load(overrides={"model": "cli-model", "role": "reviewer", "bogus": 1})

    assert settings.model == "env-model"
    assert settings.role == "reviewer"
    assert settings.auto_approve is True
    assert settings.max_tool_calls_per_turn == 10
    assert settings.temperature == 0.2


@pytest.mark.parametrize(
    "overrides",
    [
        {"context_mode": "compress"},
        {"builtin_providers": ["browser"]},
        {"max_tool_calls_per_turn": 0},
    ],
)
def test_invalid_values_are_configuration_errors(tmp_path: Path, overrides: dict) -> None:
    with pytest.raises(ConfigurationError):
        _store(tmp_path).load(overrides=overrides)


def test_provider_configs_skip_disabled_entries() -> None:
    settings = Settings(
        mcp_servers={
            "docs": {"url": "http://localhost:9000/mcp", "headers": {"Authorization": "Bearer x"}},
            "local": {"command": "server", "args": ["--stdio"], "env": {"DEBUG": "1"}},
            "old": {"url": "http://localhost:1/sse", "enabled": False},
        },
        provider_timeout_seconds=12.0,
    )

    configs = {config.name: config for config in settings.provider_configs()}

    assert set(configs) == {"docs", "local"}
    assert configs["docs"].transport is TransportKind.REQUEST
    assert configs["docs"].headers == {"Authorization": "Bearer x"}
    assert configs["docs"].timeout_seconds == 12.0
    assert configs["local"].transport is TransportKind.SUBPROCESS
    assert configs["local"].env == {"DEBUG": "1"}


def test_malformed_provider_entry_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        Settings(mcp_servers={"docs": "http://localhost"}).provider_configs()  # type: ignore[dict-item]


def test_client_settings_carry_connection_fields() -> None:
    client_settings = Settings(api_key="k", model="m", default_headers={"X": "1"}).client_settings()

    assert (client_settings.api_key, client_settings.model) == ("k", "m")
    assert client_settings.default_headers == {"X": "1"}
    assert Settings().client_settings().default_headers is None


def test_vault_rejects_unknown_backends_and_bad_tokens(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "vault.key")
    token = vault.encrypt("secret")

    assert vault.decrypt(token) == "secret"
    assert vault.encrypt("") == ""
    with pytest.raises(ValueError):
        vault.decrypt("rot13:abc")
    with pytest.raises(ValueError):
        vault.decrypt("fernet:not-a-token")


def test_redact_secret() -> None:
    assert redact_secret("") == ""
    assert redact_secret("abc") == "***"
    assert redact_secret("sk-123456") == "sk*****56"
