"""
Application configuration management using Pydantic Settings.
Supports environment variables and .env files for configuration.
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List
from pydantic_settings import BaseSettings
from pydantic import Field, validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application Settings
    app_name: str = "Scheduled Messaging Service"
    app_version: str = "1.0.0"
    debug: bool = Field(default=False, env="DEBUG")
    environment: str = Field(default="development", env="ENVIRONMENT")
    test_env: str = Field(default="unit", env="TEST_ENV")

    # API Settings
    api_prefix: str = "/api/v1"
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=8000, env="PORT")
    workers: int = Field(default=1, env="WORKERS")

    # CORS Settings
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")
    cors_allow_credentials: bool = True
    cors_allow_methods: List[str] = ["*"]
    cors_allow_headers: List[str] = ["*"]

    # Database Settings
    postgres_host: str = Field(default="localhost", env="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, env="POSTGRES_PORT")
    postgres_user: str = Field(default="scheduler_user", env="POSTGRES_USER")
    postgres_password: str = Field(default="scheduler_password", env="POSTGRES_PASSWORD")
    postgres_db: str = Field(default="scheduled_messaging", env="POSTGRES_DB")
    database_url: Optional[str] = None

    # Database Pool Settings
    db_pool_size: int = Field(default=20, env="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=40, env="DB_MAX_OVERFLOW")
    db_pool_timeout: int = Field(default=30, env="DB_POOL_TIMEOUT")

    # Redis Settings
    redis_host: str = Field(default="localhost", env="REDIS_HOST")
    redis_port: int = Field(default=6379, env="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, env="REDIS_PASSWORD")
    redis_db: int = Field(default=0, env="REDIS_DB")
    redis_url: Optional[str] = None

    # Redis Pool Settings
    redis_pool_size: int = Field(default=10, env="REDIS_POOL_SIZE")
    redis_pool_timeout: int = Field(default=30, env="REDIS_POOL_TIMEOUT")

    # Scheduler Settings
    scheduler_enabled: bool = Field(default=True, env="SCHEDULER_ENABLED")
    scheduler_poll_interval: float = Field(default=60.0, env="SCHEDULER_POLL_INTERVAL")
    scheduler_batch_size: int = Field(default=50, env="SCHEDULER_BATCH_SIZE")
    scheduler_max_in_flight: int = Field(default=10, env="SCHEDULER_MAX_IN_FLIGHT")
    scheduler_wakeup_channel: str = Field(default="scheduled:due", env="SCHEDULER_WAKEUP_CHANNEL")
    default_max_retries: int = Field(default=3, env="DEFAULT_MAX_RETRIES")
    max_retries_limit: int = Field(default=10, env="MAX_RETRIES_LIMIT")
    retry_backoff_base: float = Field(default=60.0, env="RETRY_BACKOFF_BASE")
    retry_backoff_max: float = Field(default=3600.0, env="RETRY_BACKOFF_MAX")
    claim_timeout: int = Field(default=900, env="CLAIM_TIMEOUT")
    store_retry_attempts: int = Field(default=3, env="STORE_RETRY_ATTEMPTS")
    max_recipients: int = Field(default=10000, env="MAX_RECIPIENTS")
    list_page_limit: int = Field(default=100, env="LIST_PAGE_LIMIT")
    max_update_ids: int = Field(default=100, env="MAX_UPDATE_IDS")

    # Provider Settings
    primary_provider_kind: str = Field(default="simulated", env="PRIMARY_PROVIDER_KIND")
    primary_provider_name: str = Field(default="primary-sms", env="PRIMARY_PROVIDER_NAME")
    primary_provider_url: str = Field(default="https://api.smsprovider.example/v1", env="PRIMARY_PROVIDER_URL")
    primary_provider_api_key: str = Field(default="primary-api-key", env="PRIMARY_PROVIDER_API_KEY")
    backup_provider_enabled: bool = Field(default=False, env="BACKUP_PROVIDER_ENABLED")
    backup_provider_kind: str = Field(default="simulated", env="BACKUP_PROVIDER_KIND")
    backup_provider_name: str = Field(default="backup-sms", env="BACKUP_PROVIDER_NAME")
    backup_provider_url: str = Field(default="https://api.backupsms.example/v1", env="BACKUP_PROVIDER_URL")
    backup_provider_api_key: str = Field(default="backup-api-key", env="BACKUP_PROVIDER_API_KEY")
    default_sender_id: str = Field(default="Broadcast", env="DEFAULT_SENDER_ID")
    provider_timeout: float = Field(default=15.0, env="PROVIDER_TIMEOUT")
    provider_retry_wait: float = Field(default=1.0, env="PROVIDER_RETRY_WAIT")
    provider_failure_threshold: int = Field(default=5, env="PROVIDER_FAILURE_THRESHOLD")
    provider_recovery_timeout: int = Field(default=60, env="PROVIDER_RECOVERY_TIMEOUT")
    provider_health_ttl: float = Field(default=30.0, env="PROVIDER_HEALTH_TTL")

    # Pricing (per segment / per call unit, per recipient)
    domestic_sms_rate: Decimal = Field(default=Decimal("4.00"), env="DOMESTIC_SMS_RATE")
    international_sms_rate: Decimal = Field(default=Decimal("20.00"), env="INTERNATIONAL_SMS_RATE")
    domestic_voice_rate: Decimal = Field(default=Decimal("15.00"), env="DOMESTIC_VOICE_RATE")
    international_voice_rate: Decimal = Field(default=Decimal("60.00"), env="INTERNATIONAL_VOICE_RATE")
    domestic_dialing_code: str = Field(default="234", env="DOMESTIC_DIALING_CODE")

    # Cache
    status_cache_ttl: int = Field(default=300, env="STATUS_CACHE_TTL")

    # Observability
    metrics_enabled: bool = Field(default=True, env="METRICS_ENABLED")
    tracing_enabled: bool = Field(default=False, env="TRACING_ENABLED")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")

    @validator("database_url", pre=True, always=True)
    def assemble_db_connection(cls, v: Optional[str], values: Dict[str, Any]) -> Any:
        if isinstance(v, str):
            return v
        return (
            f"postgresql+asyncpg://{values.get('postgres_user')}:{values.get('postgres_password')}"
            f"@{values.get('postgres_host')}:{int(values.get('postgres_port', 5432))}"
            f"/{values.get('postgres_db') or ''}"
        )

    @validator("redis_url", pre=True, always=True)
    def assemble_redis_connection(cls, v: Optional[str], values: Dict[str, Any]) -> Any:
        if isinstance(v, str):
            return v
        password = values.get("redis_password")
        auth = f":{password}@" if password else ""
        return (
            f"redis://{auth}{values.get('redis_host')}:{int(values.get('redis_port', 6379))}"
            f"/{values.get('redis_db') or 0}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Export settings instance
settings = get_settings()
