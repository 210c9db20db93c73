"""
Spotify Web API client for now-playing and recently-played data.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from activity_sync.models.activity import NowPlaying, Provider, SpotifyListen, SpotifyTrack
from activity_sync.utils.http import (
    RetryConfig,
    decode_json,
    malformed_payload,
    request_with_auth_retry,
)
from activity_sync.utils.timestamps import parse_timestamp

if TYPE_CHECKING:  # pragma: no cover
    from activity_sync.services.token_cache import TokenCache

logger = logging.getLogger(__name__)

MAX_RECENT_LIMIT = 50

_PROVIDER = Provider.SPOTIFY.value


def normalize_track(item: Dict[str, Any]) -> SpotifyTrack:
    """Map a Spotify track object to ``SpotifyTrack``; artists are comma-joined."""
    album = item.get("album") or {}
    images = album.get("images") or []
    return SpotifyTrack(
        track_id=item.get("id") or "",
        name=item.get("name", ""),
        artist=", ".join(a.get("name", "") for a in item.get("artists") or []),
        album=album.get("name", ""),
        external_url=(item.get("external_urls") or {}).get("spotify", ""),
        image_url=images[0].get("url", "") if images else "",
        duration_ms=int(item.get("duration_ms") or 0),
    )


class SpotifyClient:
    """Read the listening state of the configured Spotify account."""

    API_BASE = "https://api.spotify.com/v1"

    def __init__(
        self,
        token_cache: TokenCache,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._tokens = token_cache
        self._timeout = timeout
        self._transport = transport
        self._retry_config = retry_config

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.API_BASE, timeout=self._timeout, transport=self._transport
        ) as client:

            async def send(token: str) -> httpx.Response:
                return await client.get(
                    path, params=params, headers={"Authorization": f"Bearer {token}"}
                )

            return await request_with_auth_retry(
                send,
                token_cache=self._tokens,
                provider=Provider.SPOTIFY,
                retry_config=self._retry_config,
            )

    async def get_currently_playing(self) -> NowPlaying:
        response = await self._get("/me/player/currently-playing")
        # 204 (and an empty body) means nothing is playing.
        if response.status_code in (204, 404) or not response.content:
            return NowPlaying(is_playing=False)

        data = decode_json(response, _PROVIDER)
        with malformed_payload(_PROVIDER):
            item = data.get("item")
            if not item or data.get("currently_playing_type", "track") != "track":
                return NowPlaying(is_playing=False)

            track = normalize_track(item)
            return NowPlaying(
                is_playing=bool(data.get("is_playing")),
                track=track,
                progress_ms=int(data.get("progress_ms") or 0),
                duration_ms=track.duration_ms,
            )

    async def get_recently_played(self, limit: int = 10) -> List[SpotifyListen]:
        limit = max(1, min(limit, MAX_RECENT_LIMIT))
        response = await self._get("/me/player/recently-played", params={"limit": limit})
        if response.status_code == 404:
            return []

        data = decode_json(response, _PROVIDER)
        listens: List[SpotifyListen] = []
        with malformed_payload(_PROVIDER):
            for item in data.get("items") or []:
                played_at = parse_timestamp(item.get("played_at"))
                track = item.get("track")
                if played_at is None or not track or not track.get("id"):
                    logger.debug("Skipping recently-played item without track or timestamp")
                    continue
                listens.append(SpotifyListen.from_track(normalize_track(track), played_at))
        return listens


__all__ = ["MAX_RECENT_LIMIT", "SpotifyClient", "normalize_track"]
