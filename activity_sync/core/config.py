"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the cron entry point and
the maintenance scripts share one configuration surface. Integration
credentials are optional: a missing value marks that provider as "not
configured" instead of failing startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IntegrationConfig(BaseSettings):
    """Credentials and secrets for the external integrations."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    github_token: Optional[str] = Field(
        None,
        validation_alias="GITHUB_TOKEN",
        description="Personal access token used for GitHub REST and GraphQL calls.",
    )
    github_username: str = Field(
        "remcostoeten",
        validation_alias="GITHUB_USERNAME",
        description="Login whose public activity and contributions are synced.",
    )
    spotify_client_id: Optional[str] = Field(None, validation_alias="SPOTIFY_CLIENT_ID")
    spotify_client_secret: Optional[str] = Field(
        None, validation_alias="SPOTIFY_CLIENT_SECRET"
    )
    spotify_refresh_token: Optional[str] = Field(
        None, validation_alias="SPOTIFY_REFRESH_TOKEN"
    )
    cron_secret: Optional[str] = Field(
        None,
        validation_alias="CRON_SECRET",
        description="Shared secret accepted by the sync trigger.",
    )
    admin_api_token: Optional[str] = Field(
        None,
        validation_alias="ADMIN_API_TOKEN",
        description="Token identifying an operator triggering a manual sync.",
    )

    @field_validator(
        "github_token",
        "spotify_client_id",
        "spotify_client_secret",
        "spotify_refresh_token",
        "cron_secret",
        "admin_api_token",
        mode="before",
    )
    @classmethod
    def _blank_as_missing(cls, value: Optional[str]) -> Optional[str]:
        """Treat empty or whitespace-only values as unset."""
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @property
    def github_configured(self) -> bool:
        return self.github_token is not None

    @property
    def spotify_configured(self) -> bool:
        return all(
            (
                self.spotify_client_id,
                self.spotify_client_secret,
                self.spotify_refresh_token,
            )
        )

    def missing_spotify_fields(self) -> list[str]:
        """Return the environment names of absent Spotify credentials."""
        fields = {
            "SPOTIFY_CLIENT_ID": self.spotify_client_id,
            "SPOTIFY_CLIENT_SECRET": self.spotify_client_secret,
            "SPOTIFY_REFRESH_TOKEN": self.spotify_refresh_token,
        }
        return [name for name, value in fields.items() if not value]


class SyncSettings(BaseSettings):
    """Runtime limits for synchronization and outbound calls."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    deadline_seconds: float = Field(60.0, validation_alias="SYNC_DEADLINE_SECONDS", gt=0)
    token_safety_margin_seconds: int = Field(
        60,
        validation_alias="TOKEN_SAFETY_MARGIN_SECONDS",
        ge=0,
        description="Refresh tokens this many seconds before they expire.",
    )
    http_timeout_seconds: float = Field(10.0, validation_alias="HTTP_TIMEOUT_SECONDS", gt=0)
    github_window_days: int = Field(90, validation_alias="GITHUB_SYNC_WINDOW_DAYS", ge=1)
    spotify_batch_size: int = Field(
        50, validation_alias="SPOTIFY_SYNC_BATCH_SIZE", ge=1, le=50
    )


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    activity_db_path: str = Field(
        "./data/activity.db",
        validation_alias="ACTIVITY_DB_PATH",
        description="SQLite file holding synced commits, listens and sync metadata.",
    )
    integrations: IntegrationConfig = Field(default_factory=IntegrationConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()


__all__ = [
    "AppSettings",
    "IntegrationConfig",
    "SyncSettings",
    "get_settings",
]
