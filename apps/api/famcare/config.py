"""Application configuration utilities."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, Field

_ENV_PREFIX = "FAMCARE_"


class AppConfig(BaseModel):
    """Strongly typed configuration loaded from config.json and FAMCARE_* env vars."""

    default_timezone: str = Field(default="Asia/Jerusalem")
    idle_timeout_seconds: int = Field(default=300, ge=1)
    photo_interval_seconds: int = Field(default=30, ge=1)
    morning_window: str = Field(default="07:00-14:00")
    evening_window: str = Field(default="19:00-02:00")
    realtime_backend: str = Field(default="supabase", description="supabase | memory")
    realtime_heartbeat_seconds: float = Field(default=25.0)
    reconnect_initial_delay: float = Field(default=1.0)
    reconnect_max_delay: float = Field(default=60.0)
    write_retry_attempts: int = Field(default=3, ge=1)
    write_retry_multiplier: float = Field(default=0.5, ge=0)
    write_retry_max_wait: float = Field(default=4.0, ge=0)
    notification_sound: str = Field(default="/sounds/notification.mp3")
    cors_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    log_level: str = Field(default="INFO")


def _config_path() -> Path:
    override = os.getenv(f"{_ENV_PREFIX}CONFIG")
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).resolve().parents[1] / "config.json"


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name, field in AppConfig.model_fields.items():
        raw = os.getenv(f"{_ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if field.annotation == List[str]:
            overrides[name] = [item.strip() for item in raw.split(",") if item.strip()]
        else:
            overrides[name] = raw
    return overrides


def load_config() -> AppConfig:
    """Load configuration from config.json (optional), letting env vars win."""

    contents: Dict[str, Any] = {}
    config_file = _config_path()
    if config_file.exists():
        contents = json.loads(config_file.read_text())
    contents.update(_env_overrides())
    return AppConfig(**contents)


CONFIG = load_config()
