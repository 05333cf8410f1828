from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "video-matrix"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "VIDEO_MATRIX_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/video_matrix",
        validation_alias=AliasChoices("DATABASE_URL", "VIDEO_MATRIX_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "VIDEO_MATRIX_REDIS_URL"))
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "VIDEO_MATRIX_SCHEDULER_ENABLED"))
    celery_enabled: bool = Field(default=True, validation_alias=AliasChoices("CELERY_ENABLED", "VIDEO_MATRIX_CELERY_ENABLED"))
    assignment_interval_seconds: int = Field(default=30, validation_alias=AliasChoices("ASSIGNMENT_INTERVAL_SECONDS", "VIDEO_MATRIX_ASSIGNMENT_INTERVAL_SECONDS"))
    expiry_sweep_interval_seconds: int = Field(default=60, validation_alias=AliasChoices("EXPIRY_SWEEP_INTERVAL_SECONDS", "VIDEO_MATRIX_EXPIRY_SWEEP_INTERVAL_SECONDS"))
    node_online_window_minutes: int = Field(default=5, validation_alias=AliasChoices("NODE_ONLINE_WINDOW_MINUTES", "VIDEO_MATRIX_NODE_ONLINE_WINDOW_MINUTES"))
    default_expiry_hours: float = Field(default=24, validation_alias=AliasChoices("DEFAULT_EXPIRY_HOURS", "VIDEO_MATRIX_DEFAULT_EXPIRY_HOURS"))
    substep_grace_minutes: int = Field(default=30, validation_alias=AliasChoices("SUBSTEP_GRACE_MINUTES", "VIDEO_MATRIX_SUBSTEP_GRACE_MINUTES"))
    server_lease_max_reclaims: int = Field(default=3, validation_alias=AliasChoices("SERVER_LEASE_MAX_RECLAIMS", "VIDEO_MATRIX_SERVER_LEASE_MAX_RECLAIMS"))
    claim_batch_size: int = Field(default=100, validation_alias=AliasChoices("CLAIM_BATCH_SIZE", "VIDEO_MATRIX_CLAIM_BATCH_SIZE"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
