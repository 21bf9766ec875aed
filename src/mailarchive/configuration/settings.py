"""Typed settings management for mailarchive.

This module wraps operator configuration in Pydantic models so the CLI and
services can rely on validated settings. Secrets (the OAuth client secret
and the vault key) are kept in a keyring-backed secret store and masked in
the JSON file on disk.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import keyring
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from mailarchive.errors import ConfigurationError


DEFAULT_HOME = Path.home() / ".mailarchive"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"
DEFAULT_SECRETS_SERVICE = "mailarchive"
MASK = "***"


class OAuthSettings(BaseModel):
    """Configuration for the Microsoft OAuth provider."""

    client_id: Optional[str] = Field(
        default=None, description="Application client id; the public client id is used when unset"
    )
    client_secret: Optional[SecretStr] = Field(
        default=None, description="Client secret for confidential app registrations"
    )
    redirect_uri: Optional[str] = Field(
        default=None, description="Callback URL registered with the provider"
    )
    public_base_url: str = Field(
        default="http://localhost:4000",
        description="Base URL used to derive the callback and dashboard redirects",
    )
    expiry_skew_seconds: int = Field(
        default=60,
        ge=0,
        le=3600,
        description="Refresh tokens this many seconds before they expire",
    )
    request_timeout_seconds: float = Field(default=15.0, gt=0, le=120)

    @field_validator("public_base_url", "redirect_uri")
    @classmethod
    def _validate_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if not value.startswith("http://") and not value.startswith("https://"):
            raise ValueError("URL must start with http:// or https://")
        return value.rstrip("/")


class PendingAuthSettings(BaseModel):
    """Pending authorization cache tuning."""

    ttl_seconds: int = Field(default=600, ge=60, le=3600)
    sweep_interval_seconds: int = Field(default=600, ge=1, le=3600)
    redis_url: Optional[str] = Field(
        default=None, description="Shared Redis store for multi-instance deployments"
    )

    @field_validator("redis_url")
    @classmethod
    def _validate_redis_url(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return value or None


class SyncSettings(BaseModel):
    """Mailbox synchronization tuning."""

    batch_size: int = Field(default=250, ge=1, le=2000, description="Messages per UID fetch")
    max_attempts: int = Field(default=5, ge=1, le=10)
    backoff_base: float = Field(default=2.0, ge=1.0, le=10.0)
    max_jitter_seconds: float = Field(default=1.0, ge=0.0, le=10.0)
    all_inclusive_archive: bool = Field(
        default=False, description="Also archive Trash and Junk mailboxes"
    )
    parse_failure_policy: Literal["abort_mailbox", "skip"] = "abort_mailbox"
    connection_timeout_seconds: float = Field(default=30.0, gt=0, le=600)


class StorageSettings(BaseModel):
    """Configuration for the local SQLite database."""

    database_path: Path = Field(default=DEFAULT_HOME / "mailarchive.db")


class SecuritySettings(BaseModel):
    """Credential vault key material."""

    encryption_key: Optional[SecretStr] = Field(
        default=None, description="Base64 32-byte key; the OS keychain is used when unset"
    )
    keyring_service: str = DEFAULT_SECRETS_SERVICE
    keyring_key_id: str = "credential_vault_key"


class Settings(BaseModel):
    """Root configuration state."""

    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    pending_auth: PendingAuthSettings = Field(default_factory=PendingAuthSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return value


@dataclass
class SecretStore:
    """Keyring abstraction for storing credentials."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        if self.keyring_module is None:
            raise RuntimeError("Keyring module not configured")
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        if self.keyring_module is None:
            return None
        return self.keyring_module.get_password(self.service_name, key)

    def delete_secret(self, key: str) -> None:
        if self.keyring_module is None:
            return
        try:
            self.keyring_module.delete_password(self.service_name, key)
        except keyring.errors.PasswordDeleteError:
            return


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk or raise if invalid."""

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found at {path}")
    try:
        payload = json.loads(path.read_text())
        return Settings.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk with masked secrets."""

    payload = settings.model_dump(mode="json")
    payload = _mask_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))


def bootstrap_settings(
    *,
    path: Path = DEFAULT_CONFIG_PATH,
    secret_store: SecretStore | None = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create or load settings respecting environment overrides."""

    secret_store = secret_store or SecretStore()
    overrides = overrides or {}

    if path.exists():
        settings = load_settings(path)
    else:
        settings = Settings()
        save_settings(settings, path)

    merged = settings.model_dump(mode="python")
    merged = _apply_overrides(merged, overrides)
    merged = _apply_env_overrides(merged)

    try:
        resolved = Settings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    _ensure_directories(resolved)
    _hydrate_secrets(resolved, secret_store)
    return resolved


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _apply_overrides(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    oauth = data.setdefault("oauth", {})
    _set_env_override(oauth, "client_id", "MAILARCHIVE_MS_CLIENT_ID")
    _set_env_override(oauth, "client_secret", "MAILARCHIVE_MS_CLIENT_SECRET")
    _set_env_override(oauth, "redirect_uri", "MAILARCHIVE_MS_REDIRECT_URI")
    _set_env_override(oauth, "public_base_url", "MAILARCHIVE_APP_URL")

    pending = data.setdefault("pending_auth", {})
    _set_env_override(pending, "redis_url", "MAILARCHIVE_REDIS_URL")
    _set_env_override(pending, "ttl_seconds", "MAILARCHIVE_PENDING_AUTH_TTL", cast_int=True)

    sync = data.setdefault("sync", {})
    _set_env_override(sync, "batch_size", "MAILARCHIVE_SYNC_BATCH_SIZE", cast_int=True)
    _set_env_override(sync, "max_attempts", "MAILARCHIVE_SYNC_MAX_ATTEMPTS", cast_int=True)
    _set_env_override(
        sync, "all_inclusive_archive", "MAILARCHIVE_ALL_INCLUSIVE_ARCHIVE", cast_bool=True
    )
    _set_env_override(sync, "parse_failure_policy", "MAILARCHIVE_PARSE_FAILURE_POLICY")

    storage = data.setdefault("storage", {})
    _set_env_override(storage, "database_path", "MAILARCHIVE_DATABASE_PATH")

    security = data.setdefault("security", {})
    _set_env_override(security, "encryption_key", "MAILARCHIVE_ENCRYPTION_KEY")

    _set_env_override(data, "log_level", "MAILARCHIVE_LOG_LEVEL")
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast_bool:
        mapping[key] = raw.lower() in {"1", "true", "yes"}
    elif cast_int:
        try:
            mapping[key] = int(raw)
        except ValueError as exc:
            raise ConfigurationError(f"{env_name} must be an integer, got {raw!r}") from exc
    else:
        mapping[key] = raw


def _ensure_directories(settings: Settings) -> None:
    settings.storage.database_path.expanduser().parent.mkdir(parents=True, exist_ok=True)


def _hydrate_secrets(settings: Settings, secret_store: SecretStore) -> None:
    """Move plaintext secrets into the keyring, restore masked ones from it."""

    _hydrate_field(settings.oauth, "client_secret", "oauth:client_secret", secret_store)
    _hydrate_field(settings.security, "encryption_key", "vault:encryption_key", secret_store)


def _hydrate_field(model: BaseModel, name: str, secret_key: str, store: SecretStore) -> None:
    value: Optional[SecretStr] = getattr(model, name)
    if value is not None and value.get_secret_value() not in ("", MASK):
        store.set_secret(secret_key, value.get_secret_value())
        return
    existing = store.get_secret(secret_key)
    setattr(model, name, SecretStr(existing) if existing else None)


def _mask_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    oauth = payload.get("oauth", {})
    if oauth.get("client_secret"):
        oauth["client_secret"] = MASK
    security = payload.get("security", {})
    if security.get("encryption_key"):
        security["encryption_key"] = MASK
    return payload


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "OAuthSettings",
    "PendingAuthSettings",
    "SecretStore",
    "SecuritySettings",
    "Settings",
    "StorageSettings",
    "SyncSettings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
