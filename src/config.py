from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Gemini API (optional; an empty key means the dependency is offline)
    gemini_api_key: str = ""
    gemini_model: str = "gemini-pro"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_temperature: float = 0.7
    gemini_max_tokens: int = 1000

    # Persisted resilience state (empty string means in-memory only)
    state_db_path: str = ""
    event_log_capacity: int = 50

    # Health monitor
    health_check_interval_seconds: int = 300
    health_max_errors: int = 3
    health_max_response_time_ms: int = 5000
    health_auto_recover_after: int = 0  # 0 = recovery from lite mode is manual only

    # Security shield
    security_check_interval_seconds: int = 10
    security_max_requests_per_minute: int = 60
    security_rotation_interval_seconds: int = 900

    # Personalization analytics
    personalization_analysis_interval_seconds: int = 60

    log_level: str = "INFO"

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
