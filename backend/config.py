from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    google_cloud_project: str = ""
    firestore_emulator_host: Optional[str] = None
    storage_backend: str = "firestore"  # firestore | memory
    youtube_api_key: str = ""
    lastfm_api_key: str = ""
    youtube_timeout_seconds: float = 8.0
    lastfm_timeout_seconds: float = 10.0
    # CORS origins — set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]
    # Extra production origin; appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    # Game rules
    min_players: int = 2
    max_players: int = 12
    countdown_seconds: float = 10
    session_retention_days: int = 7
    countdown_sweep_interval_seconds: float = 5.0  # 0 disables the background sweep

    # Media lookup cache
    inflight_ttl_seconds: float = 30.0
    quota_suppression_seconds: float = 300.0
    negative_cache_ttl_hours: float = 24.0
    cache_max_age_days: int = 90
    cache_max_entries: int = 10000
    cache_min_confidence: float = 0.0
    track_search_cache_seconds: float = 3600.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
