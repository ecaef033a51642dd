from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    app_name: str = Field(default_factory=lambda: os.getenv("APP_NAME", "rt-canvas"))
    app_version: str = Field(default_factory=lambda: os.getenv("APP_VERSION", "0.1.0"))

    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = Field(default_factory=lambda: os.getenv("LOG_FILE") or None)

    # Where the peer listener binds, and what goes into issued tickets
    listen_host: str = Field(default_factory=lambda: os.getenv("LISTEN_HOST", "0.0.0.0"))
    listen_port: int = Field(default_factory=lambda: int(os.getenv("LISTEN_PORT", "7878")))
    advertise_hosts: List[str] = Field(
        default_factory=lambda: [
            h.strip() for h in os.getenv("ADVERTISE_HOSTS", "127.0.0.1").split(",") if h.strip()
        ]
    )

    offline: bool = Field(default_factory=lambda: _env_bool("OFFLINE"))
    display_name: Optional[str] = Field(default_factory=lambda: os.getenv("DISPLAY_NAME") or None)

    presence_interval_ms: int = Field(default_factory=lambda: int(os.getenv("PRESENCE_INTERVAL_MS", "50")))
    presence_expiry_s: float = Field(default_factory=lambda: float(os.getenv("PRESENCE_EXPIRY_S", "5.0")))
    anti_entropy_interval_s: float = Field(
        default_factory=lambda: float(os.getenv("ANTI_ENTROPY_INTERVAL_S", "5.0"))
    )

    undo_max_history: int = Field(default_factory=lambda: int(os.getenv("UNDO_MAX_HISTORY", "100")))

    connect_timeout_s: float = Field(default_factory=lambda: float(os.getenv("CONNECT_TIMEOUT_S", "10.0")))
    reconnect_attempts: int = Field(default_factory=lambda: int(os.getenv("RECONNECT_ATTEMPTS", "3")))


@lru_cache
def get_settings() -> Settings:
    return Settings()
