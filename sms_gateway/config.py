from functools import lru_cache
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DEDUPLICATION_INTERVAL_MINUTES = 4320  # 72 hours


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./sms_gateway.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Trailing window in which an identical (to_number, body) is rejected
    DEDUPLICATION_INTERVAL_MINUTES: int = DEFAULT_DEDUPLICATION_INTERVAL_MINUTES

    # Return only rows actually claimed by the polling device
    POLL_STRICT_CLAIMS: bool = False

    @field_validator("DEDUPLICATION_INTERVAL_MINUTES", mode="before")
    @classmethod
    def fallback_dedup_interval(cls, v: Any) -> int:
        """Non-positive or unparsable values fall back to the default window."""
        try:
            minutes = int(str(v).strip())
        except (TypeError, ValueError):
            return DEFAULT_DEDUPLICATION_INTERVAL_MINUTES
        if minutes <= 0:
            return DEFAULT_DEDUPLICATION_INTERVAL_MINUTES
        return minutes


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
