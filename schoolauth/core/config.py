"""Application settings parsed from environment variables and defaults."""

import json
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CORS_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]

# Session lifetimes in minutes keyed by connection quality: (short, remember-me).
DEFAULT_SESSION_LIFETIMES: dict[str, tuple[int, int]] = {
    "stable": (30, 60 * 24),
    "unstable": (60 * 4, 60 * 24 * 7),
    "offline": (60 * 24, 60 * 24 * 30),
}


def _split_list(value: str | list[str] | None) -> list[str]:
    """Normalize list settings from JSON, CSV, or list inputs."""
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return []


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_name: str = "School Admin Auth"
    environment: str = "development"
    api_prefix: str = "/api"

    database_url: str = "sqlite+aiosqlite:///./schoolauth.db"
    test_database_url: Optional[str] = None

    jwt_secret_key: str
    jwt_refresh_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "schoolauth"
    jwt_audience: str = "school-admin"

    access_token_expires_minutes: int = 15
    session_lifetimes: dict[str, tuple[int, int]] = Field(
        default_factory=lambda: dict(DEFAULT_SESSION_LIFETIMES)
    )
    refresh_reuse_grace_seconds: int = 30
    courtesy_rotation_threshold_seconds: int = 120
    first_login_token_expires_minutes: int = 60
    session_sweep_grace_minutes: int = 60
    session_sweep_interval_seconds: int = 900
    revoked_session_retention_days: int = 7

    log_level: str = "INFO"
    cors_origins: list[str] | str = Field(default_factory=lambda: DEFAULT_CORS_ORIGINS.copy())
    redis_url: str = "redis://redis:6379/0"
    worker_queue_names: list[str] | str = Field(default_factory=lambda: ["default", "maintenance"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_cors_origins(cls, value: str | list[str] | None) -> list[str]:
        """Normalize CORS origins from JSON, CSV, or list inputs."""
        return _split_list(value) or DEFAULT_CORS_ORIGINS.copy()

    @field_validator("worker_queue_names", mode="before")
    @classmethod
    def _split_worker_queue_names(cls, value: str | list[str] | None) -> list[str]:
        """Normalize worker queue names from JSON, CSV, or list inputs."""
        return _split_list(value) or ["default"]

    @field_validator("session_lifetimes")
    @classmethod
    def _require_known_qualities(cls, value: dict[str, tuple[int, int]]) -> dict[str, tuple[int, int]]:
        """Every connection quality needs a lifetime entry."""
        missing = set(DEFAULT_SESSION_LIFETIMES) - set(value)
        if missing:
            raise ValueError(f"session_lifetimes is missing entries for: {', '.join(sorted(missing))}")
        return value

    @model_validator(mode="after")
    def _validate_distinct_secrets(self) -> "Settings":
        """Reject configurations where access and refresh tokens share a secret."""
        if self.jwt_secret_key == self.jwt_refresh_secret_key:
            raise ValueError("JWT_REFRESH_SECRET_KEY must differ from JWT_SECRET_KEY")
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid re-parsing environment variables."""
    return Settings()


settings = get_settings()
