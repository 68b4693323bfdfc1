from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./couponhub.db"
    database_echo: bool = False

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300

    # Application URLs
    frontend_url: str = "http://localhost:3000"
    upgrade_path: str = "/premium"

    # Collaborator API security
    internal_api_key: str = ""

    # Points economy
    starting_points: int = 100
    points_upload: int = 5
    points_claim: int = 10
    points_boost: int = 20
    daily_bonus_points: int = 10
    level_points_step: int = 100

    # Free-tier quota
    daily_claims_limit: int = 3

    # Webhook idempotency index
    webhook_event_retention_days: int = 30
    webhook_retention_worker_enabled: bool = False
    webhook_retention_interval_seconds: int = 60 * 60

    @field_validator(
        "starting_points",
        "points_upload",
        "points_claim",
        "points_boost",
        "daily_bonus_points",
        "daily_claims_limit",
        mode="after",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("points and quota settings must be non-negative")
        return value

    @field_validator("level_points_step", "webhook_event_retention_days", mode="after")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @property
    def upgrade_url(self) -> str:
        return f"{self.frontend_url.rstrip('/')}{self.upgrade_path}"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
