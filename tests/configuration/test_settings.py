"""Tests for mailarchive configuration settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict

import pytest
from pydantic import SecretStr, ValidationError

from mailarchive.configuration.settings import (
    PendingAuthSettings,
    SecretStore,
    Settings,
    bootstrap_settings,
    load_settings,
    save_settings,
)
from mailarchive.errors import ConfigurationError


class InMemorySecretStore(SecretStore):
    def __init__(self) -> None:
        super().__init__(service_name="test", keyring_module=None)
        self.storage: Dict[str, str] = {}

    def set_secret(self, key: str, value: str) -> None:  # type: ignore[override]
        self.storage[key] = value

    def get_secret(self, key: str) -> str | None:  # type: ignore[override]
        return self.storage.get(key)

    def delete_secret(self, key: str) -> None:  # type: ignore[override]
        self.storage.pop(key, None)


@pytest.fixture
def local_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("MAILARCHIVE_DATABASE_PATH", str(tmp_path / "data" / "mailarchive.db"))
    return tmp_path


def test_bootstrap_creates_default_config(local_paths: Path) -> None:
    config_path = local_paths / "config.json"

    settings = bootstrap_settings(path=config_path, secret_store=InMemorySecretStore())

    assert config_path.exists()
    data = json.loads(config_path.read_text())
    assert data["sync"]["batch_size"] == 250
    assert data["pending_auth"]["ttl_seconds"] == 600
    assert settings.sync.parse_failure_policy == "abort_mailbox"
    assert settings.oauth.public_base_url == "http://localhost:4000"
    assert (local_paths / "data").is_dir()


def test_environment_overrides(local_paths: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAILARCHIVE_MS_CLIENT_ID", "app-id")
    monkeypatch.setenv("MAILARCHIVE_APP_URL", "https://mail.example.com/")
    monkeypatch.setenv("MAILARCHIVE_REDIS_URL", "redis://cache:6379/1")
    monkeypatch.setenv("MAILARCHIVE_SYNC_BATCH_SIZE", "100")
    monkeypatch.setenv("MAILARCHIVE_ALL_INCLUSIVE_ARCHIVE", "true")
    monkeypatch.setenv("MAILARCHIVE_PARSE_FAILURE_POLICY", "skip")
    monkeypatch.setenv("MAILARCHIVE_LOG_LEVEL", "debug")

    settings = bootstrap_settings(
        path=local_paths / "config.json", secret_store=InMemorySecretStore()
    )

    assert settings.oauth.client_id == "app-id"
    assert settings.oauth.public_base_url == "https://mail.example.com"
    assert settings.pending_auth.redis_url == "redis://cache:6379/1"
    assert settings.sync.batch_size == 100
    assert settings.sync.all_inclusive_archive is True
    assert settings.sync.parse_failure_policy == "skip"
    assert settings.log_level == "DEBUG"


def test_invalid_integer_override(local_paths: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAILARCHIVE_SYNC_MAX_ATTEMPTS", "five")
    with pytest.raises(ConfigurationError):
        bootstrap_settings(path=local_paths / "config.json", secret_store=InMemorySecretStore())


def test_out_of_range_override(local_paths: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAILARCHIVE_SYNC_BATCH_SIZE", "0")
    with pytest.raises(ConfigurationError):
        bootstrap_settings(path=local_paths / "config.json", secret_store=InMemorySecretStore())


def test_secrets_move_into_secret_store(local_paths: Path) -> None:
    store = InMemorySecretStore()
    key = "A" * 43 + "="

    settings = bootstrap_settings(
        path=local_paths / "config.json",
        secret_store=store,
        overrides={"oauth": {"client_secret": "s3cret"}, "security": {"encryption_key": key}},
    )

    assert store.get_secret("oauth:client_secret") == "s3cret"
    assert store.get_secret("vault:encryption_key") == key
    assert settings.oauth.client_secret.get_secret_value() == "s3cret"


def test_masked_secrets_are_restored_from_store(local_paths: Path) -> None:
    store = InMemorySecretStore()
    store.set_secret("oauth:client_secret", "from-keyring")
    config_path = local_paths / "config.json"
    save_settings(Settings.model_validate({"oauth": {"client_secret": "s3cret"}}), config_path)

    settings = bootstrap_settings(path=config_path, secret_store=store)

    assert settings.oauth.client_secret.get_secret_value() == "from-keyring"


def test_save_masks_secrets(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    settings = Settings()
    settings.oauth.client_secret = SecretStr("s3cret")
    settings.security.encryption_key = SecretStr("key")

    save_settings(settings, config_path)

    data = json.loads(config_path.read_text())
    assert data["oauth"]["client_secret"] == "***"
    assert data["security"]["encryption_key"] == "***"
    assert load_settings(config_path).oauth.client_secret.get_secret_value() == "***"


def test_load_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_settings(config_path)


def test_validation_rules() -> None:
    with pytest.raises(ValidationError):
        PendingAuthSettings(redis_url="http://cache")
    with pytest.raises(ValidationError):
        Settings(log_level="verbose")
    with pytest.raises(ValidationError):
        Settings.model_validate({"sync": {"parse_failure_policy": "ignore"}})
