"""Huddle application configuration.

Loads settings from two YAML files:
  * huddle.settings.yaml: non-secret configuration
  * huddle.secrets.yaml: secrets (never committed)

The settings file is looked up via the ``HUDDLE_SETTINGS`` environment
variable first, then in the current working directory. The secrets file is
expected next to the settings file. Missing files fall back to defaults.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("huddle.settings.yaml")
SECRETS_FILE  = Path("huddle.secrets.yaml")

SETTINGS_ENV_VAR = "HUDDLE_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class AuthSettings(BaseModel):
    algorithm:             str = "HS256"
    access_token_minutes:  int = 15
    auth_header:           str = "X-Auth-Token"
    cookie_name:           str = "token"
    query_param:           str = "token"


class StorageSettings(BaseModel):
    db_path: str = "huddle.duckdb"


class RealtimeSettings(BaseModel):
    """Limits and timeouts for the WebSocket chat core."""
    persistence_timeout_seconds: float = 5.0
    max_text_length:             int   = 5000
    max_emoji_length:            int   = 32
    max_client_key_length:       int   = 128
    history_page_size:           int   = 30
    history_max_page_size:       int   = 100
    typing_stop_delay_seconds:   float = 1.2
    typing_expiry_seconds:       float = 2.5

    @field_validator("persistence_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("persistence_timeout_seconds must be positive")
        return v


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_settings_path(settings_path: Optional[Path]) -> Path:
    if settings_path is not None:
        return Path(settings_path)
    env_path = os.environ.get(SETTINGS_ENV_VAR)
    if env_path:
        return Path(env_path)
    return SETTINGS_FILE


def load_config(settings_path: Optional[Path] = None) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_file = _resolve_settings_path(settings_path)
    secrets_file = settings_file.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    # Relative storage paths resolve from the settings file directory
    storage = settings_data.get("storage") or {}
    db_path = storage.get("db_path")
    if db_path and db_path != ":memory:" and not Path(db_path).is_absolute():
        storage["db_path"] = str(settings_file.parent / db_path)
        settings_data["storage"] = storage

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, storage=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.db_path,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppSettings) -> None:
    """Replace the process-wide settings (used by tests and embedding apps)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
