from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    database_url: str = Field(..., alias="DATABASE_URL")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    tz: str = Field("UTC", alias="TZ")
    aggregation_max_attempts: int = Field(5, alias="AGGREGATION_MAX_ATTEMPTS", ge=1)
    aggregation_backoff_seconds: float = Field(0.05, alias="AGGREGATION_BACKOFF_SECONDS", ge=0)
    reconcile_interval_minutes: int = Field(60, alias="RECONCILE_INTERVAL_MINUTES", ge=0)

    @property
    def asyncpg_dsn(self) -> str:
        # asyncpg expects a plain postgresql:// scheme
        return self.database_url.replace("+asyncpg", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
