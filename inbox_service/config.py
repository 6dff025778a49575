from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Environment variables win over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str = "sqlite:///./inbox.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Webhook subscription handshake (hub.verify_token)
    WEBHOOK_VERIFY_TOKEN: Optional[str] = None

    # Phone numbers written with a local trunk "0" get this country code
    PHONE_DEFAULT_COUNTRY_CODE: str = "966"

    # Conversation list cache
    CONVERSATIONS_CACHE_TTL_SECONDS: float = 30.0
    REQUEST_TIMEOUT_SECONDS: float = 25.0

    # Bulk reader
    BULK_PAGE_SIZE: int = 1000
    BULK_MAX_ROWS: int = 50000
    BULK_PAGE_DELAY_SECONDS: float = 0.1
    BULK_MAX_RETRIES: int = 3
    BULK_RETRY_BASE_DELAY_SECONDS: float = 1.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
