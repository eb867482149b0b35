from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Storage
    storage_backend: str = "memory"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    # Discord
    discord_webhook_url: Optional[str] = None

    # Application
    environment: str = "development"
    log_level: str = "INFO"
    cron_hour: int = 6
    cron_minute: int = 0
    cron_secret: Optional[str] = None
    match_pass_enabled: bool = True

    # Scoring
    flag_threshold: int = 60
    match_threshold: float = 0.4
    history_retention_days: int = 30
    sparkline_days: int = 7
    permanent_image_hosts: List[str] = ["r2.dev", "r2.cloudflarestorage.com"]

    class Config:
        env_file = ".env"
        case_sensitive = False

    @field_validator('history_retention_days')
    @classmethod
    def keep_a_week_of_history(cls, value: int) -> int:
        # Sparklines read the last 7 days
        if value < 7:
            raise ValueError("history_retention_days must be at least 7")
        return value

    @field_validator('storage_backend')
    @classmethod
    def known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "supabase"):
            raise ValueError(f"Unknown storage backend: {value}")
        return value


settings = Settings()
