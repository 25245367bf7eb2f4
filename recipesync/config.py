"""Configuration loading for recipesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class RemoteConfig:
    """Where the remote record service lives.

    backend "http" talks to base_url; "memory" keeps everything in process
    and is what local-only installs and tests use.
    """

    enabled: bool = True
    backend: str = "http"
    base_url: str = "http://localhost:8080/api"
    api_token: str | None = None
    timeout: float = 30.0
    max_retries: int = 3
    user: str = "local-user"  # identity of the in-process backend


@dataclass
class CacheConfig:
    cache_dir: str = "~/.recipesync/cache"
    state_db_path: str = "~/.recipesync/state.db"


@dataclass
class IdentityConfig:
    personal_zone: str = "PersonalSources"


@dataclass
class SyncConfig:
    """Behaviour of the sync engine."""

    pending_db_path: str = "~/.recipesync/pending.db"
    share_url_retry_delay_seconds: float = 0.5
    share_url_max_retries: int = 1
    rollback_on_permanent_failure: bool = False


@dataclass
class Config:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with RECIPESYNC_ prefix."""
    return os.environ.get(f"RECIPESYNC_{key}", default)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Remote overrides
    if enabled := _get_env("REMOTE_ENABLED"):
        config.remote.enabled = _parse_bool(enabled)
    if backend := _get_env("REMOTE_BACKEND"):
        config.remote.backend = backend
    if base_url := _get_env("REMOTE_BASE_URL"):
        config.remote.base_url = base_url
    if api_token := _get_env("REMOTE_API_TOKEN"):
        config.remote.api_token = api_token
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout = float(timeout)
    if max_retries := _get_env("REMOTE_MAX_RETRIES"):
        config.remote.max_retries = int(max_retries)
    if user := _get_env("REMOTE_USER"):
        config.remote.user = user

    # Cache overrides
    if cache_dir := _get_env("CACHE_DIR"):
        config.cache.cache_dir = cache_dir
    if state_db_path := _get_env("STATE_DB_PATH"):
        config.cache.state_db_path = state_db_path

    # Identity overrides
    if personal_zone := _get_env("PERSONAL_ZONE"):
        config.identity.personal_zone = personal_zone

    # Sync overrides
    if pending_db_path := _get_env("PENDING_DB_PATH"):
        config.sync.pending_db_path = pending_db_path
    if retry_delay := _get_env("SHARE_URL_RETRY_DELAY"):
        config.sync.share_url_retry_delay_seconds = float(retry_delay)
    if max_retries := _get_env("SHARE_URL_MAX_RETRIES"):
        config.sync.share_url_max_retries = int(max_retries)
    if rollback := _get_env("ROLLBACK_ON_PERMANENT_FAILURE"):
        config.sync.rollback_on_permanent_failure = _parse_bool(rollback)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.

    Raises:
        ValueError: If the remote backend is not "http" or "memory".
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    enabled=remote_data.get("enabled", config.remote.enabled),
                    backend=remote_data.get("backend", config.remote.backend),
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    api_token=remote_data.get("api_token"),
                    timeout=remote_data.get("timeout", config.remote.timeout),
                    max_retries=remote_data.get("max_retries", config.remote.max_retries),
                    user=remote_data.get("user", config.remote.user),
                )

            # Parse cache config
            if "cache" in data:
                cache_data = data["cache"]
                config.cache = CacheConfig(
                    cache_dir=cache_data.get("cache_dir", config.cache.cache_dir),
                    state_db_path=cache_data.get(
                        "state_db_path", config.cache.state_db_path
                    ),
                )

            # Parse identity config
            if "identity" in data:
                config.identity = IdentityConfig(
                    personal_zone=data["identity"].get(
                        "personal_zone", config.identity.personal_zone
                    )
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    pending_db_path=sync_data.get(
                        "pending_db_path", config.sync.pending_db_path
                    ),
                    share_url_retry_delay_seconds=sync_data.get(
                        "share_url_retry_delay_seconds",
                        config.sync.share_url_retry_delay_seconds,
                    ),
                    share_url_max_retries=sync_data.get(
                        "share_url_max_retries", config.sync.share_url_max_retries
                    ),
                    rollback_on_permanent_failure=sync_data.get(
                        "rollback_on_permanent_failure",
                        config.sync.rollback_on_permanent_failure,
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    if config.remote.backend not in ("http", "memory"):
        raise ValueError(f"Unknown remote backend: {config.remote.backend}")

    return config
