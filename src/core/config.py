"""Application configuration using pydantic-settings."""
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Signing secret used when none is configured. Only acceptable in local mode.
DEV_SESSION_SECRET = "local-development-session-secret"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Execution mode - "local" allows credential login without the identity provider
    app_env: Literal["local", "staging", "production"] = Field(
        default="production", validation_alias="APP_ENV",
    )

    # Session cookies are signed with this key (HS256)
    session_secret_key: str = Field(
        default=DEV_SESSION_SECRET, validation_alias="SESSION_SECRET_KEY",
    )

    # Upstream job API
    upstream_api_url: str = Field(
        default="http://localhost:8000", validation_alias="API_URL",
    )
    jobs_path: str = Field(default="/scheduled-jobs/", validation_alias="JOBS_PATH")
    upstream_timeout: float = Field(default=30.0, validation_alias="API_TIMEOUT")

    # Casso SSO - token exchange endpoint and the portal users are sent to
    sso_exchange_url: str = Field(default="", validation_alias="API_LOGIN_URL")
    sso_portal_url: str = Field(default="", validation_alias="CASSO_URL")

    # Query cache windows, in seconds
    cache_stale_seconds: float = Field(default=60.0, validation_alias="CACHE_STALE_SECONDS")
    cache_gc_seconds: float = Field(default=300.0, validation_alias="CACHE_GC_SECONDS")

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS",
    )

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @model_validator(mode="after")
    def validate_session_secret(self) -> "Settings":
        """
        Prevent the development signing secret from being used outside local mode.

        Anyone who knows the development secret can forge a session cookie, so
        staging and production must provide their own SESSION_SECRET_KEY.
        """
        if self.is_local:
            return self
        if not self.session_secret_key or self.session_secret_key == DEV_SESSION_SECRET:
            raise ValueError(
                f"SESSION_SECRET_KEY must be set when APP_ENV is '{self.app_env}'. "
                "The development secret is only allowed in local mode.",
            )
        return self

    @property
    def is_local(self) -> bool:
        """Whether the dashboard runs without the real identity provider."""
        return self.app_env == "local"

    @property
    def cookie_secure(self) -> bool:
        """Session cookies are Secure everywhere except local mode."""
        return not self.is_local

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def credential_login_url(self) -> str:
        """Get the upstream username/password login endpoint."""
        return f"{self.upstream_api_url.rstrip('/')}/navi/login/"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
