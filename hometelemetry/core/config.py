# hometelemetry/core/config.py

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"

DEFAULT_ROOM_NAMES: Dict[str, str] = {
    "indoor": "Hallway (Console)",
    "outdoor": "Outside",
    "ch1": "Hallway",
    "ch2": "Living Room",
    "ch3": "Laundry Room",
    "ch4": "Dining Room",
    "ch5": "Kitchen",
    "ch6": "Bedroom 1",
    "ch7": "Bedroom 2",
    "ch8": "Bedroom 4",
}


class Settings(BaseSettings):
    """
    Process-wide settings.

    Values come from the OS environment first, then from a local .env file.
    Every provider is optional: a provider without credentials is simply not
    scheduled.
    """

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # -------------------------
    # General
    # -------------------------
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="production")
    TIMEZONE: str = Field(default="Europe/London")
    HTTP_TIMEOUT_SECONDS: float = Field(default=30.0)
    # Tokens are refreshed this long before they expire (never less than an hour)
    TOKEN_REFRESH_MARGIN_SECONDS: int = Field(default=3600, ge=3600)

    # -------------------------
    # Local store
    # -------------------------
    DATABASE_URL: str = Field(default=f"sqlite+aiosqlite:///{BASE_DIR / 'readings.db'}")

    # -------------------------
    # Ecowitt (sensors)
    # -------------------------
    ECOWITT_API_URL: str = Field(default="https://api.ecowitt.net/api/v3")
    ECOWITT_APPLICATION_KEY: Optional[str] = Field(default=None)
    ECOWITT_API_KEY: Optional[str] = Field(default=None)
    ECOWITT_MAC: Optional[str] = Field(default=None)
    ECOWITT_POLL_INTERVAL_SECONDS: int = Field(default=300)
    # JSON object mapping channel id -> room name
    ROOM_NAMES: Optional[str] = Field(default=None)

    # -------------------------
    # Glow / Glowmarkt (electricity + gas)
    # -------------------------
    GLOW_API_URL: str = Field(default="https://api.glowmarkt.com/api/v0-1")
    GLOW_APPLICATION_ID: str = Field(default="b0f1b774-a586-4f72-9edd-27ead8aa7a8d")
    GLOW_USERNAME: Optional[str] = Field(default=None)
    GLOW_PASSWORD: Optional[str] = Field(default=None)
    GLOW_ELECTRICITY_RESOURCE_ID: Optional[str] = Field(default=None)
    GLOW_ELECTRICITY_COST_RESOURCE_ID: Optional[str] = Field(default=None)
    GLOW_GAS_RESOURCE_ID: Optional[str] = Field(default=None)
    GLOW_GAS_COST_RESOURCE_ID: Optional[str] = Field(default=None)
    GLOW_POLL_INTERVAL_SECONDS: int = Field(default=1800)
    GLOW_LOOKBACK_DAYS: int = Field(default=2)
    GLOW_CHUNK_DAYS: int = Field(default=10)

    # -------------------------
    # Kraken GraphQL (water)
    # -------------------------
    KRAKEN_API_URL: Optional[str] = Field(default=None)
    KRAKEN_EMAIL: Optional[str] = Field(default=None)
    KRAKEN_PASSWORD: Optional[str] = Field(default=None)
    WATER_METER_SERIAL: Optional[str] = Field(default=None)
    WATER_POLL_INTERVAL_SECONDS: int = Field(default=21600)
    WATER_LOOKBACK_DAYS: int = Field(default=7)
    WATER_CHUNK_DAYS: int = Field(default=31)

    # -------------------------
    # Backfill
    # -------------------------
    BACKFILL_MAX_DAYS: int = Field(default=400)

    # -------------------------
    # Mirror (best-effort secondary copy)
    # -------------------------
    MIRROR_BACKEND: str = Field(default="none")  # none | rest | mongo
    SUPABASE_URL: Optional[str] = Field(default=None)
    SUPABASE_KEY: Optional[str] = Field(default=None)
    MONGODB_URL: Optional[str] = Field(default=None)
    MONGODB_DB: str = Field(default="home_telemetry")

    # -------------------------
    # Helpers
    # -------------------------
    def get_room_names(self) -> Dict[str, str]:
        names = dict(DEFAULT_ROOM_NAMES)
        raw = (self.ROOM_NAMES or "").strip()
        if raw:
            names.update({str(k): str(v) for k, v in json.loads(raw).items()})
        return names

    def ecowitt_enabled(self) -> bool:
        return bool(self.ECOWITT_APPLICATION_KEY and self.ECOWITT_API_KEY and self.ECOWITT_MAC)

    def glow_enabled(self) -> bool:
        return bool(self.GLOW_USERNAME and self.GLOW_PASSWORD and self.GLOW_ELECTRICITY_RESOURCE_ID)

    def kraken_enabled(self) -> bool:
        return bool(self.KRAKEN_API_URL and self.KRAKEN_EMAIL and self.KRAKEN_PASSWORD and self.WATER_METER_SERIAL)

    def enabled_providers(self) -> List[str]:
        enabled = []
        if self.ecowitt_enabled():
            enabled.append("ecowitt")
        if self.glow_enabled():
            enabled.append("glow")
        if self.kraken_enabled():
            enabled.append("kraken")
        return enabled


settings = Settings()
