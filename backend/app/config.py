"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Journey Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, testing, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./journeys.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker and result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Execution engine
    STEP_BUDGET: int = 50  # max nodes advanced per invocation
    TICK_CONCURRENCY: int = 20  # max executions advanced at once per tick

    # Retry policy for transient node failures
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY: float = 30.0  # seconds
    RETRY_MAX_DELAY: float = 3600.0  # seconds
    RETRY_JITTER: bool = True
    RETRY_JITTER_RANGE: float = 0.25

    # Scheduler
    SCHEDULE_BATCH_SIZE: int = 100

    # Maintenance
    MAINTENANCE_SAMPLE_RATE: int = 60  # run cleanup on roughly 1 in N ticks
    EXECUTION_RETENTION_DAYS: int = 90

    # Channel sender (webhook delivery)
    CHANNEL_WEBHOOK_URL: str = ""
    CHANNEL_WEBHOOK_TOKEN: str = ""
    CHANNEL_TIMEOUT: float = 10.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
