"""Relay application configuration.

Loads settings from two YAML files:
  * relay.settings.yaml : non-secret configuration
  * relay.secrets.yaml  : secrets (never committed)

Either path can be overridden with RELAY_SETTINGS_FILE / RELAY_SECRETS_FILE.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SECRETS_FILE  = Path("relay.secrets.yaml")


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


class RedisSecrets(BaseModel):
    password: Optional[str] = None


class Secrets(BaseModel):
    jwt:   JWTSecrets   = Field(default_factory=JWTSecrets)
    redis: RedisSecrets = Field(default_factory=RedisSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class RedisSettings(BaseModel):
    """Shared key-value store and pub/sub bus.

    ``backend: memory`` keeps presence and the bus inside one process and is
    only meant for single-instance development and tests.
    """
    backend:        Literal["redis", "memory"] = "redis"
    url:            str = "redis://localhost:6379/0"
    presence_key:   str = "online_users"
    channel_prefix: str = "relay"
    # Redis Stream of sent-message events for analytics; empty disables it.
    message_stream: str = "chat:messages"
    # Only safe when this is the sole instance: wipes every presence entry.
    clear_presence_on_startup: bool = False


class StoreSettings(BaseModel):
    db_path: str = "relay_messages.duckdb"


class AuthSettings(BaseModel):
    algorithm:             str = "HS256"
    token_expire_minutes:  int = 60


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    redis:   RedisSettings   = Field(default_factory=RedisSettings)
    store:   StoreSettings   = Field(default_factory=StoreSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings() -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(os.environ.get("RELAY_SETTINGS_FILE", SETTINGS_FILE))
    secrets_path  = Path(os.environ.get("RELAY_SECRETS_FILE", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, redis.backend=%s, store=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.redis.backend,
        app_settings.store.db_path,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: AppSettings) -> None:
    global _config
    _config = config


def reset_config() -> None:
    """Drop the cached settings so the next get_config() reloads them."""
    global _config
    _config = None
