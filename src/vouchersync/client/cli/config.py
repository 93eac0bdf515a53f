"""Configuration utilities for the vouchersync CLI.

This module provides shared configuration functions used across CLI commands,
and builds the session, endpoint settings and cache from the saved settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from vouchersync.client.keystore import CryptoKeyStore
from vouchersync.client.storage.hybrid import HybridStore
from vouchersync.core.config import CacheConfig, RemoteConfig, SessionContext

CONFIG_DIR_ENV = "VOUCHERSYNC_CONFIG_DIR"


def get_config_dir() -> Path:
    """Get the configuration directory for vouchersync.

    Returns:
        Path from VOUCHERSYNC_CONFIG_DIR, or ~/.vouchersync.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".vouchersync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_cache_dir(config: dict[str, Any]) -> Path:
    """Get the cache directory.

    Returns:
        Path to the configured cache directory (default <config dir>/cache).
    """
    if config.get("cache_dir"):
        return Path(config["cache_dir"]).expanduser()
    return get_config_dir() / "cache"


def is_initialized(config: dict[str, Any]) -> bool:
    """Whether init has stored an endpoint and a session."""
    return bool(config.get("endpoint_url") and config.get("user_id") and config.get("auth_token"))


def build_session(config: dict[str, Any]) -> SessionContext:
    """Session of the configured user."""
    return SessionContext(user_id=config["user_id"], auth_token=config["auth_token"])


def build_remote_config(config: dict[str, Any]) -> RemoteConfig:
    """Remote endpoint settings from the saved configuration."""
    return RemoteConfig(
        endpoint_url=config["endpoint_url"],
        constrained=bool(config.get("constrained", False)),
        max_attempts=int(config.get("max_attempts", 10)),
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def build_cache_config(config: dict[str, Any]) -> CacheConfig:
    """Cache settings from the saved configuration."""
    return CacheConfig(
        cache_dir=get_cache_dir(config),
        backend=config.get("backend", "auto"),
        cache_expiry_days=config.get("cache_expiry_days"),
        quota_bytes=config.get("quota_bytes"),
    )


def open_store(config: dict[str, Any]) -> HybridStore:
    """Open the configured user's encrypted cache."""
    cache_config = build_cache_config(config)
    keystore = CryptoKeyStore(
        cache_config.cache_dir,
        use_keyring=bool(config.get("use_keyring", True)),
    )
    return HybridStore.open(cache_config, keystore, config["user_id"])
