"""
Factory functions to provide shared clients and services as FastAPI dependencies.

Every factory is cached so the token cache, the store and the read cache are
process-wide; tests replace them through ``app.dependency_overrides``.
"""

from datetime import timedelta
from functools import lru_cache

from activity_sync.clients import (
    ActivityStore,
    GitHubClient,
    SpotifyClient,
    SpotifyTokenSource,
    StaticTokenSource,
)
from activity_sync.core.config import get_settings
from activity_sync.models.activity import Provider
from activity_sync.services import SWRCache, SyncOrchestrator, TokenCache


@lru_cache()
def _settings():
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_token_cache() -> TokenCache:
    """Provide the process-wide access token cache."""
    settings = _settings()
    return TokenCache(
        [
            StaticTokenSource(Provider.GITHUB, settings.integrations.github_token),
            SpotifyTokenSource(
                settings.integrations,
                timeout=settings.sync.http_timeout_seconds,
            ),
        ],
        safety_margin=timedelta(seconds=settings.sync.token_safety_margin_seconds),
    )


@lru_cache()
def get_github_client() -> GitHubClient:
    """Provide GitHub client instance."""
    settings = _settings()
    return GitHubClient(get_token_cache(), timeout=settings.sync.http_timeout_seconds)


@lru_cache()
def get_spotify_client() -> SpotifyClient:
    """Provide Spotify client instance."""
    settings = _settings()
    return SpotifyClient(get_token_cache(), timeout=settings.sync.http_timeout_seconds)


@lru_cache()
def get_activity_store() -> ActivityStore:
    """Provide shared SQLite activity store."""
    settings = _settings()
    return ActivityStore(settings.activity_db_path)


@lru_cache()
def get_read_cache() -> SWRCache:
    """Provide the stale-while-revalidate cache backing the read routes."""
    return SWRCache()


def get_sync_orchestrator() -> SyncOrchestrator:
    """Build a sync orchestrator over the shared clients and store."""
    settings = _settings()
    return SyncOrchestrator(
        store=get_activity_store(),
        token_cache=get_token_cache(),
        github_client=get_github_client(),
        spotify_client=get_spotify_client(),
        github_username=settings.integrations.github_username,
        deadline_seconds=settings.sync.deadline_seconds,
        github_window=timedelta(days=settings.sync.github_window_days),
        spotify_batch_size=settings.sync.spotify_batch_size,
    )


__all__ = [
    "get_activity_store",
    "get_github_client",
    "get_read_cache",
    "get_spotify_client",
    "get_sync_orchestrator",
    "get_token_cache",
]
