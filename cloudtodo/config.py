"""Configuration loading for cloudtodo."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .sync.remote_client import ENTRIES_PATH


@dataclass
class StoreConfig:
    """Configuration for the local entry store."""

    db_path: str = "~/.cloudtodo/entries.db"
    cursor_path: str | None = None  # None keeps the cursor in the database


@dataclass
class RemoteConfig:
    base_url: str = "http://localhost:8080"
    entries_path: str = ENTRIES_PATH
    timeout: float = 5.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass
class SyncConfig:
    """Configuration for sync scheduling."""

    offline_mode: bool = False
    interval_seconds: float = 900.0
    lazy_delay_seconds: float = 5.0
    network_retry_seconds: float = 30.0


@dataclass
class AuthConfig:
    account: str | None = None
    token: str | None = None


@dataclass
class Config:
    store: StoreConfig = field(default_factory=StoreConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with CLOUDTODO_ prefix."""
    return os.environ.get(f"CLOUDTODO_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path
    if cursor_path := _get_env("CURSOR_PATH"):
        config.store.cursor_path = cursor_path

    # Remote overrides
    if base_url := _get_env("REMOTE_URL"):
        config.remote.base_url = base_url
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout = float(timeout)

    # Sync overrides
    if offline := _get_env("OFFLINE_MODE"):
        config.sync.offline_mode = offline.lower() in ("true", "1", "yes")
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = float(interval)

    # Auth overrides
    if account := _get_env("ACCOUNT"):
        config.auth.account = account
    if token := _get_env("TOKEN"):
        config.auth.token = token

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse store config
            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    cursor_path=store_data.get("cursor_path", config.store.cursor_path),
                )

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    entries_path=remote_data.get(
                        "entries_path", config.remote.entries_path
                    ),
                    timeout=remote_data.get("timeout", config.remote.timeout),
                    max_retries=remote_data.get(
                        "max_retries", config.remote.max_retries
                    ),
                    retry_backoff_seconds=remote_data.get(
                        "retry_backoff_seconds", config.remote.retry_backoff_seconds
                    ),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    offline_mode=sync_data.get("offline_mode", config.sync.offline_mode),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.sync.interval_seconds
                    ),
                    lazy_delay_seconds=sync_data.get(
                        "lazy_delay_seconds", config.sync.lazy_delay_seconds
                    ),
                    network_retry_seconds=sync_data.get(
                        "network_retry_seconds", config.sync.network_retry_seconds
                    ),
                )

            # Parse auth config
            if "auth" in data:
                auth_data = data["auth"]
                config.auth = AuthConfig(
                    account=auth_data.get("account"),
                    token=auth_data.get("token"),
                )

    return _apply_env_overrides(config)
