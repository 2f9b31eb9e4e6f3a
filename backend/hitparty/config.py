from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:5000"
    CORS_ORIGIN_REGEX: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    MAX_PLAYERS: int = 8
    WINNING_SCORE: int = 10
    JOIN_CODE_LENGTH: int = 6
    DEFAULT_START_YEAR_MIN: int = 1950
    DEFAULT_START_YEAR_MAX: int = 2020

    SONG_MIN_YEAR: int = 1950
    SONG_TARGET_COUNT: int = 20
    SONG_SERVICE_URL: Optional[str] = None
    SONG_SERVICE_TIMEOUT_SEC: float = 30.0

    ELEVENLABS_API_KEY: Optional[str] = None
    ELEVENLABS_VOICE_ID: str = "38yEkwjgqOwvn7qykcx3"
    ELEVENLABS_MODEL_ID: str = "eleven_multilingual_v2"
    ELEVENLABS_BASE_URL: str = "https://api.elevenlabs.io"
    NARRATION_TIMEOUT_SEC: float = 20.0

    # 0 disables the idle sweep
    SESSION_IDLE_TIMEOUT_SEC: int = 0
    SESSION_SWEEP_INTERVAL_SEC: int = 60
    # how long the closing marker of an ended session stays pollable
    EVENT_LOG_RETENTION_SEC: int = 300

    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
