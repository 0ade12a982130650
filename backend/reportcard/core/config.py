from pydantic_settings import BaseSettings
from pydantic import validator


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Report Card Portal"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./reportcard.db"
    DATABASE_ECHO: bool = False

    # SIS upstream settings
    SIS_QUERY_PREFIX: str = "org.infocare.sync"
    SIS_PAGE_SIZE: int = 50
    SIS_TOKEN_SKEW_SECONDS: int = 300
    SIS_HTTP_TIMEOUT_SECONDS: float = 30.0
    SIS_MAX_ATTEMPTS: int = 2

    # Sync engine settings
    SIS_RUN_DEADLINE_SECONDS: float = 1800.0
    SIS_UPSERT_CHUNK_SIZE: int = 200
    SIS_SYNC_HALT_ON_FAILURE: bool = False
    SIS_LOCK_STALE_SECONDS: int = 7200
    SIS_RUN_RETENTION_DAYS: int = 30
    SIS_DETAILS_SAMPLE_SIZE: int = 20

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("SIS_PAGE_SIZE", "SIS_UPSERT_CHUNK_SIZE", "SIS_MAX_ATTEMPTS")
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @validator("SIS_LOCK_STALE_SECONDS")
    def validate_lock_window(cls, v, values):
        # The full-sync lock is refreshed between steps, and each step is bounded by the run deadline
        deadline = values.get("SIS_RUN_DEADLINE_SECONDS")
        if deadline is not None and v <= deadline:
            raise ValueError("must be longer than SIS_RUN_DEADLINE_SECONDS")
        return v

    @validator("LOG_LEVEL")
    def normalize_log_level(cls, v):
        return v.upper()

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
