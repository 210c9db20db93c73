"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_activity_store,
    get_github_client,
    get_read_cache,
    get_spotify_client,
    get_sync_orchestrator,
    get_token_cache,
)
from .config import SettingsDependency, get_app_settings

__all__ = [
    "SettingsDependency",
    "get_activity_store",
    "get_app_settings",
    "get_github_client",
    "get_read_cache",
    "get_spotify_client",
    "get_sync_orchestrator",
    "get_token_cache",
]
