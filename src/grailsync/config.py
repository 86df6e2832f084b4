"""Configuration management for grailsync."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".grailsync"
_CONFIG_FILE = "config.toml"
_DB_FILE = "grailsync.db"
_STORAGE_FILE = "storage.json"
_LOG_DIR = "logs"
_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


def get_base_dir() -> Path:
    """Return the base directory for all grailsync runtime files (~/.grailsync/)."""
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class GeneralConfig(BaseModel):
    """Process-wide settings."""

    log_level: str = Field(default="info", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.lower() not in _LOG_LEVELS:
            msg = f"log_level must be one of: {', '.join(_LOG_LEVELS)}"
            raise ValueError(msg)
        return value.lower()


class DiscogsConfig(BaseModel):
    """Discogs API credentials.

    ``consumer_key``/``consumer_secret`` sign delegated (OAuth) requests;
    ``token`` is a manually entered personal access token.
    """

    consumer_key: str = Field(default="", description="Discogs application consumer key")
    consumer_secret: SecretStr = Field(default=SecretStr(""), description="Discogs application consumer secret")
    token: SecretStr = Field(default=SecretStr(""), description="Discogs personal access token")
    user_agent: str = Field(default="grailsync/0.1", description="User-Agent sent to the Discogs API")


class SyncConfig(BaseModel):
    """Settings that control catalog synchronisation."""

    page_size: int = Field(default=100, ge=1, le=100, description="Items requested per page")
    page_delay_seconds: float = Field(default=0.25, ge=0, description="Pause between page requests")
    price_batch_delay_seconds: float = Field(default=0.5, ge=0, description="Pause between batch price lookups")


class CacheConfig(BaseModel):
    """Settings for the persisted market price cache."""

    market_ttl_days: int = Field(default=30, ge=1, description="Days a cached price entry stays valid")


class AppConfig(BaseModel):
    """Top-level application configuration."""

    app: GeneralConfig = Field(default_factory=GeneralConfig)
    discogs: DiscogsConfig = Field(default_factory=DiscogsConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def db_path(self) -> Path:
        return self.base_dir / _DB_FILE

    @property
    def storage_path(self) -> Path:
        return self.base_dir / _STORAGE_FILE

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR

    def has_manual_token(self) -> bool:
        """Return True if a personal access token is set."""
        return bool(self.discogs.token.get_secret_value())

    def has_consumer_credentials(self) -> bool:
        """Return True if the OAuth consumer key and secret are both set."""
        return bool(self.discogs.consumer_key and self.discogs.consumer_secret.get_secret_value())


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def _format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to a minimal TOML string (tables of scalars only)."""
    lines: list[str] = []
    for section_name in type(config).model_fields:
        section_model = getattr(config, section_name)
        lines.append(f"[{section_name}]")
        for key, value in section_model.model_dump(mode="python").items():
            lines.append(f"{key} = {_format_toml_value(value)}")
        lines.append("")
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
