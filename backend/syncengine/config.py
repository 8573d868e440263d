"""Runtime settings for the sync engine.

WHAT:
    Single pydantic-settings model covering platform API versions, stub mode,
    backoff tuning, window defaults and resource deadlines.

WHY:
    Job handlers receive a Settings instance instead of reading os.environ
    directly, so tests can construct one with overrides.

REFERENCES:
    - syncengine/services/shopify_sync_service.py
    - syncengine/services/meta_sync_service.py
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Shopify Admin GraphQL
    SHOPIFY_API_VERSION: str = "2025-01"
    SHOPIFY_PAGE_SIZE: int = 100
    SHOPIFY_DEFAULT_LOOKBACK_DAYS: int = 7

    # Meta Marketing API (Graph)
    META_API_VERSION: str = "v19.0"
    META_API_BASE_URL: str = "https://graph.facebook.com"
    META_STUB_MODE: bool = False
    META_DEFAULT_LOOKBACK_DAYS: int = 30
    META_PAGE_LIMIT: int = 500
    META_USAGE_THRESHOLD_PCT: float = 80.0
    META_MAX_USAGE_WAIT_SECONDS: float = 300.0

    # Hard rate-limit backoff (429 / throttled responses)
    BACKOFF_INITIAL_SECONDS: float = 2.0
    BACKOFF_MAX_SECONDS: float = 60.0
    BACKOFF_MAX_ATTEMPTS: int = 5

    # Windows
    FILL_WINDOW_DAYS: int = 7

    # Deadlines
    HTTP_TIMEOUT_SECONDS: float = 30.0
    DB_STATEMENT_TIMEOUT_MS: int = 60000

    # Worker / telemetry
    REDIS_URL: str = "redis://localhost:6379/0"
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
