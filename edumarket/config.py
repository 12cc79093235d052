from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List
import os


class Settings(BaseSettings):
    """Global app settings loaded from environment.
    - Keep defaults light for dev.
    - Override via .env or real env vars.
    """

    APP_NAME: str = "edumarket_api"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True

    MONGODB_URI: str = "mongodb://localhost:27017/edumarket"

    # JWT settings (tokens are issued by the accounts service, we only verify them)
    JWT_SECRET: str = "edumarket_dev_secret"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Shared secret for service-to-service calls (booking confirmations)
    INTERNAL_API_SECRET: str = "edumarket_internal_dev"

    # Raw CORS string from env (comma-separated); parsed via cors_origins property
    CORS_ORIGINS: str | None = None

    # Message paging
    MESSAGES_PAGE_SIZE: int = 50
    MESSAGES_MAX_PAGE_SIZE: int = 100

    # Optional pub/sub backend for multi-process socket fan-out, e.g. redis://localhost:6379/0
    SOCKETIO_MESSAGE_QUEUE: str | None = None

    # Rate limits (slowapi syntax)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_INITIATE: str = "20/minute"
    RATE_LIMIT_SEND: str = "120/minute"

    LOG_DIR: str = "logs"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def cors_origins(self) -> List[str]:
        """Return CORS origins as a list, parsing comma-separated env string."""
        raw = self.CORS_ORIGINS or os.getenv("CORS_ORIGINS", "") or ""
        return [o.strip() for o in raw.split(",") if o.strip()]

    @property
    def database_name(self) -> str:
        """Database name taken from the URI path, `edumarket` when absent."""
        db_name = self.MONGODB_URI.rsplit("/", 1)[-1].split("?")[0]
        return db_name or "edumarket"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
