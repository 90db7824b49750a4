"""
Worker configuration — pydantic settings read from the environment / .env.
"""

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "development"
    port: int = 8080

    # Providers
    openai_api_key: str = ""
    fal_key: str = ""
    skip_moderation: bool = False

    # Persistence
    supabase_url: str = Field(
        "", validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL")
    )
    supabase_service_role_key: str = ""
    redis_url: Optional[str] = None

    # R2 storage
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "assets"
    r2_public_url: str = ""

    # Auth
    worker_shared_secret: str = ""

    # Workflow tuning
    video_poll_interval: float = Field(10.0, gt=0)
    video_max_poll_attempts: int = Field(30, ge=1)
    provider_timeout_seconds: float = Field(120.0, gt=0)
    max_concurrent_runs_per_user: int = Field(3, ge=1)
    event_retention_seconds: float = Field(300.0, ge=0)
    heartbeat_seconds: float = Field(30.0, gt=0)

    # Multi-worker ownership
    worker_id: Optional[str] = None
    run_lease_seconds: float = Field(30.0, gt=0)
    lease_renew_seconds: float = Field(5.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def r2_configured(self) -> bool:
        return bool(
            self.r2_account_id and self.r2_access_key_id
            and self.r2_secret_access_key and self.r2_public_url
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
