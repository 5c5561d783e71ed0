"""Simulator configuration via Pydantic Settings (12-Factor App compliance).

Environment-driven configuration for:
- QuestDB REST endpoint and query timeout
- Table and column names of the historical tick and session-event data

All settings can be overridden via environment variables or .env file.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # --- QuestDB ---
    QUESTDB_URL: str = "http://localhost:9000"
    QUESTDB_QUERY_TIMEOUT_S: float = Field(default=30.0, gt=0)

    # --- Historical Data Layout ---
    TICKS_TABLE: str = "ticks"
    TICKS_PRICE_COLUMN: str = "close"  # Last close price of each tick row
    SYSTEM_EVENTS_TABLE: str = "system_events"

    @field_validator("QUESTDB_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") if isinstance(v, str) else v


settings = Settings()
