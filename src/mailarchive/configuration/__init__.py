"""Configuration loading utilities for mailarchive."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    OAuthSettings,
    PendingAuthSettings,
    SecretStore,
    Settings,
    SyncSettings,
    bootstrap_settings,
    load_settings,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "OAuthSettings",
    "PendingAuthSettings",
    "SecretStore",
    "Settings",
    "SyncSettings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
