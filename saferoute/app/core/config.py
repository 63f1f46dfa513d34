"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for a single laptop on a hotspot.

Usage:
    from saferoute.app.core.config import settings
    print(settings.RELAY_URL)

The relay address a device connects to can additionally be overridden by
the persisted ``relay_url`` entry of that device's state file (see
``saferoute.app.mesh.channels.relay_client.resolve_relay_url``).
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "SafeRoute SOS Relay"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Relay hub (server side) ──
    RELAY_HOST: str = "0.0.0.0"
    RELAY_PORT: int = 8765
    RELAY_HISTORY_LIMIT: int = 100  # most-recent alerts replayed to new clients

    # ── CORS ──
    CORS_ORIGINS: List[str] = ["*"]
    CORS_ALLOW_ALL: bool = True

    # ── Relay hub (client side) ──
    RELAY_URL: str = "ws://localhost:8765"
    RELAY_RECONNECT_DELAY: float = 3.0  # seconds between reconnect attempts
    RELAY_CONNECT_TIMEOUT: float = 5.0  # seconds per connect attempt

    # ── Device state ──
    STATE_FILE: str = "data/device_state.json"
    MAX_QUEUE_SIZE: int = 20  # per queue (pending / received)
    SEEN_ID_LIMIT: int = 500  # ids remembered after flush so replays stay deduped

    # ── Shared-storage fallback channel ──
    SHARED_STORE_PATH: Optional[str] = None  # disabled when unset
    SHARED_POLL_INTERVAL: float = 1.0

    # ── Backend sync ──
    BACKEND_API_URL: str = "http://localhost:5000/api"
    BACKEND_API_TOKEN: Optional[str] = None
    SYNC_TIMEOUT: float = 30.0
    AUTO_FLUSH_INTERVAL: float = 0.0  # seconds; 0 disables periodic flush

    # ── Geolocation ──
    GEOLOCATION_TIMEOUT: float = 3.0
    DEFAULT_LATITUDE: Optional[float] = None
    DEFAULT_LONGITUDE: Optional[float] = None

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
