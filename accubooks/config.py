"""Application configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost/accubooks"
    STORAGE_BACKEND: str = "memory"  # "memory" or "sql"

    # Application
    APP_ENV: str = "development"
    API_V1_PREFIX: str = "/api"
    FRONTEND_URL: str = "http://localhost:3000"

    # Background jobs
    SCHEDULER_ENABLED: bool = False

    # Rate limiting (HTTP)
    RATE_LIMIT_DEFAULT: str = "120/minute"

    # Automation - retries
    RETRY_BASE_DELAY_MINUTES: int = 5
    RETRY_BACKOFF_FACTOR: int = 2
    RETRY_MAX_ATTEMPTS: int = 4
    ACTION_TIMEOUT_SECONDS: float = 30.0
    IDEMPOTENCY_CACHE_SIZE: int = 10000

    # Automation - worker pool
    WORKER_POOL_SIZE: int = 16
    TENANT_MAX_CONCURRENCY: int = 4
    TENANT_ACTION_RATE_LIMIT: str = "60/minute"

    # Automation - rule safety
    AUTO_PAUSE_FAILURE_THRESHOLD: int = 3
    MAX_CONDITION_DEPTH: int = 8
    MAX_CONDITION_NODES: int = 100

    # Forecasting
    FORECAST_WINDOW_DAYS: int = 180
    FORECAST_HORIZON_MONTHS: int = 3
    FORECAST_FULL_AVAILABILITY_DAYS: int = 90

    # Scenarios
    SCENARIO_HORIZON_MONTHS: int = 12
    SAFE_RUNWAY_DAYS: int = 180
    RUNWAY_CAP_DAYS: int = 999

    # Insights
    INSIGHT_ZSCORE_THRESHOLD: float = 3.0
    INSIGHT_MIN_SAMPLES: int = 5
    INSIGHT_DEDUP_HOURS: int = 24
    INSIGHT_EXPIRY_DAYS: int = 7
    BUDGET_ALERT_THRESHOLD_PCT: float = 85.0

    # CORS
    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        if self.APP_ENV == "development":
            return ["*"]
        return [self.FRONTEND_URL]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
