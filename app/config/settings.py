from typing import List, Union
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "failsafe-scheduler"
    VERSION: str = "0.1.0"
    API_PREFIX: str = "/api/v1"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./failsafe.db"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Scheduler Worker
    SCHEDULER_POLL_INTERVAL_SECONDS: int = Field(default=30, ge=1)
    SCHEDULER_BATCH_LIMIT: int = Field(default=50, ge=1)
    DISPATCH_CONCURRENCY: int = Field(default=5, ge=1)
    DISPATCH_TIMEOUT_SECONDS: int = Field(default=30, ge=1)
    AGGRESSIVE_RETRY_DELAY_SECONDS: int = Field(default=60, ge=0)
    AGGRESSIVE_MAX_RETRIES: int = Field(default=3, ge=0)

    # Recovery Monitor
    RECOVERY_INTERVAL_SECONDS: int = Field(default=60, ge=1)
    STUCK_THRESHOLD_MINUTES: int = Field(default=5, ge=1)

    # Reminder planning
    OVERDUE_GRACE_SECONDS: int = Field(default=5, ge=1)
    HIGH_PRIORITY_LEAD_MINUTES: int = Field(default=60, ge=0)

    # Client sync
    CONDITION_CACHE_TTL_SECONDS: int = Field(default=5, ge=0)
    SYNC_RECONNECT_MAX_BACKOFF_SECONDS: int = Field(default=30, ge=1)

    # Notification dispatch
    NOTIFICATION_CHANNEL: str = "log"
    NOTIFICATION_WEBHOOK_URL: str = ""

    # Condition events
    EVENT_BUS_BACKEND: str = "memory"
    EVENT_CHANNEL: str = "failsafe:condition-events"

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


settings = Settings()
