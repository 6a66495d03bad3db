"""Huddle application configuration.

Loads settings from two YAML files:
  * huddle.settings.yaml: non-secret configuration
  * huddle.secrets.yaml: secrets (never committed)

Both are optional; missing files fall back to the model defaults.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from huddle.chat.models import PRIVATE_SCOPE_PREFIX

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("huddle.settings.yaml")
SECRETS_FILE  = Path("huddle.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AuthSecrets(BaseModel):
    api_key: Optional[str] = None


class Secrets(BaseModel):
    auth: AuthSecrets = Field(default_factory=AuthSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 5000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5174"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return value.lower()


class ChatSettings(BaseModel):
    seed_rooms:          List[str] = Field(default_factory=lambda: ["general", "random", "help"])
    default_room:        str = "general"
    room_history_cap:    int = 100
    private_history_cap: int = 100
    history_window:      int = 50
    outbox_size:         int = 1000  # 0 = unbounded

    @field_validator("room_history_cap", "private_history_cap", "history_window")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("seed_rooms")
    @classmethod
    def _room_names(cls, value: List[str]) -> List[str]:
        for name in value:
            if not name.strip() or name.startswith(PRIVATE_SCOPE_PREFIX):
                raise ValueError(f"invalid room name: {name!r}")
        return value

    @field_validator("outbox_size")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or positive")
        return value

    @model_validator(mode="after")
    def _default_room_is_seeded(self) -> "ChatSettings":
        if self.default_room not in self.seed_rooms:
            raise ValueError(
                f"default_room {self.default_room!r} must be one of seed_rooms {self.seed_rooms}"
            )
        return self


class AuthSettings(BaseModel):
    """Identity provider used to verify join tokens."""
    enabled:         bool  = False
    userinfo_url:    str   = ""
    timeout_seconds: float = 5.0


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Path = SETTINGS_FILE,
    secrets_path: Path = SECRETS_FILE,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, rooms=%s, auth.enabled=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.chat.seed_rooms,
        app_settings.auth.enabled,
    )
    return app_settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    """Process-wide settings, loaded once from the default file locations."""
    return load_settings()
