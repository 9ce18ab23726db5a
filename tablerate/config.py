from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized runtime configuration loaded from environment variables.
    """

    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str
    SUPABASE_ANON_KEY: str | None = None
    API_PREFIX: str = "/api"
    APP_NAME: str = "TableRate API"
    ALLOWED_ORIGINS: list[str] = ["*"]
    LOG_LEVEL: str = "INFO"
    # Required as X-Admin-Key on mutating security routes; unset disables them
    ADMIN_API_KEY: str | None = None

    # Persistence calls
    STORE_TIMEOUT_SECONDS: float = 10.0
    RETRY_ATTEMPTS: int = 3
    RETRY_DELAY_SECONDS: float = 1.0

    # Rate limiting (per identity and global sliding windows)
    RATE_LIMIT_MAX_PER_WINDOW: int = 3
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_BLOCK_SECONDS: float = 300.0
    MIN_SUBMISSION_INTERVAL_SECONDS: float = 2.0
    GLOBAL_RATE_LIMIT_MAX_PER_WINDOW: int = 120
    GLOBAL_RATE_LIMIT_BLOCK_SECONDS: float = 60.0
    RATE_LIMIT_CLEANUP_SECONDS: float = 3600.0

    # Duplicate guard and business rules
    DUPLICATE_COOLDOWN_HOURS: float = 24.0
    CONSISTENCY_TOLERANCE: float = 2.0
    MAX_CLOCK_SKEW_SECONDS: float = 60.0
    MAX_RATING_AGE_DAYS: float = 30.0

    # Fraud heuristics
    FRAUD_AUTOMATION_PATTERNS: list[str] = [
        "bot",
        "crawler",
        "spider",
        "scraper",
        "automated",
        "headless",
        "phantom",
        "selenium",
        "webdriver",
    ]
    FRAUD_UNIFORM_MIN_CRITERIA: int = 3
    FRAUD_MIN_CADENCE_SECONDS: float = 2.0

    # Aggregation
    AGGREGATE_CACHE_TTL_SECONDS: float = 30.0
    WEIGHT_HALF_LIFE_DAYS: float = 30.0

    # Change propagation
    DEBOUNCE_SECONDS: float = 1.0
    SWEEP_INTERVAL_SECONDS: float = 0.0

    # Offline continuity
    LOCAL_DB_PATH: str = "tablerate_offline.db"
    OFFLINE_CACHE_TTL_SECONDS: float = 24 * 60 * 60
    CONNECTIVITY_CHECK_SECONDS: float = 30.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
