from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Values in the environment win over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str = "sqlite:///./wamirror.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Phone number id of the business account; messages sent from it are outbound
    BUSINESS_PHONE_ID: str = "918329446654"

    # Empty disables X-Hub-Signature-256 verification on /api/webhook
    WEBHOOK_SECRET: str = ""

    # Directory scanned by POST /api/process-samples
    SAMPLES_DIR: str = "samples"

    CORS_ORIGINS: List[str] = ["*"]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
