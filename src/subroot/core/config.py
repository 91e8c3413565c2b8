"""
Subscription Root Service - Configuration
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    # Application
    APP_NAME: str = "Subscription Root Service"
    VERSION: str = "1.0.0"
    ENV: str = "development"
    DEBUG: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8084
    WORKERS: int = 1
    LOG_LEVEL: str = "INFO"

    # Database
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "subroot"
    DB_USER: str = "subroot"
    DB_PASSWORD: str = ""
    DB_POOL_SIZE: int = 5
    DB_POOL_MAX_OVERFLOW: int = 5

    @property
    def DATABASE_URL(self) -> str:
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Ledger
    LEDGER_BACKEND: str = "memory"  # memory | http
    LEDGER_GATEWAY_URL: str = "http://localhost:8899"
    LEDGER_REQUEST_TIMEOUT: float = 10.0
    LEDGER_CONFIG_HANDLE: Optional[str] = Field(default=None, min_length=64, max_length=64)
    AUTHORITY_KEY_FILE: Optional[str] = None

    # Sync
    SYNC_PUBLISH_TIMEOUT: float = 30.0
    SYNC_RETRY_COUNT: int = 5
    SYNC_RETRY_DELAY: float = 1.0
    SYNC_RETRY_MAX_DELAY: float = 30.0

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SYNC_INTERVAL_MINUTES: int = 10

    # API
    API_AUTH_ENABLED: bool = False
    API_KEY: Optional[str] = None

    # Metrics
    METRICS_ENABLED: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
