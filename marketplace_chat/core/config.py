"""Application configuration powered by Pydantic settings."""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a local ``.env``)."""

    PROJECT_NAME: str = Field(default="Marketplace Chat")
    LOG_LEVEL: str = Field(default="INFO")

    MONGO_URL: str = Field(default="mongodb://localhost:27017")
    MONGO_DB: str = Field(default="marketplace")
    # Empty -> in-process change feed (single worker deployments and tests)
    REDIS_URL: str = Field(default="")

    JWT_SECRET: str = Field(default="change-me")
    JWT_ALGORITHM: str = Field(default="HS256")

    CONVERSATION_LIST_POLL_SECONDS: float = Field(default=5.0)
    CONVERSATION_POLL_SECONDS: float = Field(default=3.0)
    SYNC_FAILURE_THRESHOLD: int = Field(default=3, ge=1)

    MAX_MESSAGE_LENGTH: int = Field(default=2000)
    NOTIFICATION_PREVIEW_LENGTH: int = Field(default=50)

    FCM_SERVICE_ACCOUNT_FILE: str = Field(default="")
    FCM_PROJECT_ID: str = Field(default="")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def fcm_enabled(self) -> bool:
        return bool(self.FCM_SERVICE_ACCOUNT_FILE and self.FCM_PROJECT_ID)


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> Settings:
    """Return cached settings instance to avoid repeated parsing."""

    if overrides:
        return Settings(**overrides)
    return Settings()
