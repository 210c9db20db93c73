"""Expose constructed client wrappers."""

from .activity_store import ActivityStore
from .github import GitHubClient
from .spotify import SpotifyClient
from .spotify_auth import SpotifyTokenSource, StaticTokenSource, TokenSource

__all__ = [
    "ActivityStore",
    "GitHubClient",
    "SpotifyClient",
    "SpotifyTokenSource",
    "StaticTokenSource",
    "TokenSource",
]
