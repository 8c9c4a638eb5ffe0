"""Service configuration, read from the environment (or ``.env``) once at import.

Code reads ``settings`` instead of calling os.getenv(). The ``OFFLINE_*``
variables tune the sync engine; the rest cover the database, token checks
and the HTTP surface.
"""

import warnings
from functools import lru_cache
from typing import List, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SECRET_KEY = "change-me-in-production"
LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite:///./data/possync.db"

    # Tokens are issued by the POS auth service; we only verify them
    secret_key: str = DEFAULT_SECRET_KEY
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240

    cors_origins: str = "http://localhost:3000,http://localhost:8000"
    api_v1_prefix: str = "/api/v1"
    rate_limit_enabled: bool = True

    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Sync engine
    offline_batch_size: int = Field(50, ge=1, le=500)
    offline_max_attempts: int = Field(5, ge=1)
    offline_retry_cap_seconds: int = Field(300, ge=1)
    offline_stale_claim_seconds: int = Field(300, ge=1)
    offline_retention_days: int = Field(30, ge=0)
    # 0 disables the background sync job
    offline_auto_sync_interval_seconds: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_secret_key(self) -> "Settings":
        weak = self.secret_key == DEFAULT_SECRET_KEY or len(self.secret_key) < 32
        if weak and not self.debug:
            raise ValueError(
                "FATAL: SECRET_KEY must be set to at least 32 characters when DEBUG is off "
                f"(current length: {len(self.secret_key)})."
            )
        if weak:
            warnings.warn(
                "SECRET_KEY is the default or shorter than 32 characters. Set SECRET_KEY environment variable.",
                UserWarning,
                stacklevel=2,
            )
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Origins for CORSMiddleware. Local origins are dropped when DEBUG is off."""
        if self.cors_origins == "*":
            return ["*"]
        origins = [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]
        if self.debug:
            return origins
        return [o for o in origins if not any(host in o for host in LOCAL_HOSTS)]


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
