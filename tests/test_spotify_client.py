from __future__ import annotations

import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from activity_sync.clients.spotify import SpotifyClient
from activity_sync.clients.spotify_auth import SpotifyTokenSource
from activity_sync.core.config import IntegrationConfig
from activity_sync.core.errors import (
    AuthConfigMissingError,
    AuthenticationFailedError,
    RateLimitedError,
)
from activity_sync.models.activity import Provider
from activity_sync.services.token_cache import TokenCache


def _integrations(**overrides) -> IntegrationConfig:
    values = {
        "spotify_client_id": "client-id",
        "spotify_client_secret": "client-secret",
        "spotify_refresh_token": "refresh-0",
    }
    values.update(overrides)
    return IntegrationConfig(**values)


def _track(track_id: str = "t1", name: str = "Song") -> dict:
    return {
        "id": track_id,
        "name": name,
        "artists": [{"name": "Artist A"}, {"name": "Artist B"}],
        "album": {"name": "Album", "images": [{"url": "https://img/large"}, {"url": "https://img/small"}]},
        "external_urls": {"spotify": f"https://open.spotify.com/track/{track_id}"},
        "duration_ms": 215000,
    }


class FakeSpotify:
    """Serves the accounts token endpoint and the Web API player endpoints."""

    def __init__(self) -> None:
        self.token_requests: list[httpx.Request] = []
        self.api_requests: list[httpx.Request] = []
        self.token_status = 200
        self.rotate = False
        self.api_responses: list[httpx.Response] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.spotify.com":
            self.token_requests.append(request)
            if self.token_status != 200:
                return httpx.Response(self.token_status, headers={"Retry-After": "7"})
            count = len(self.token_requests)
            payload = {"access_token": f"access-{count}", "expires_in": 3600}
            if self.rotate:
                payload["refresh_token"] = f"refresh-{count}"
            return httpx.Response(200, json=payload)

        self.api_requests.append(request)
        return self.api_responses.pop(0)


def _client(fake: FakeSpotify, **integration_overrides) -> SpotifyClient:
    transport = httpx.MockTransport(fake)
    source = SpotifyTokenSource(_integrations(**integration_overrides), transport=transport)
    return SpotifyClient(TokenCache([source]), transport=transport)


@pytest.mark.asyncio
async def test_token_exchange_uses_basic_auth_and_refresh_grant() -> None:
    fake = FakeSpotify()
    fake.api_responses.append(httpx.Response(204))

    await _client(fake).get_currently_playing()

    request = fake.token_requests[0]
    expected = base64.b64encode(b"client-id:client-secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"
    form = parse_qs(request.content.decode())
    assert form == {"grant_type": ["refresh_token"], "refresh_token": ["refresh-0"]}
    assert fake.api_requests[0].headers["Authorization"] == "Bearer access-1"


@pytest.mark.asyncio
async def test_nothing_playing_on_204() -> None:
    fake = FakeSpotify()
    fake.api_responses.append(httpx.Response(204))

    now_playing = await _client(fake).get_currently_playing()

    assert now_playing.is_playing is False
    assert now_playing.track is None


@pytest.mark.asyncio
async def test_currently_playing_track() -> None:
    fake = FakeSpotify()
    fake.api_responses.append(
        httpx.Response(
            200,
            json={"is_playing": True, "progress_ms": 1000, "item": _track()},
        )
    )

    now_playing = await _client(fake).get_currently_playing()

    assert now_playing.is_playing is True
    assert now_playing.progress_ms == 1000
    assert now_playing.duration_ms == 215000
    assert now_playing.track is not None
    assert now_playing.track.artist == "Artist A, Artist B"
    assert now_playing.track.image_url == "https://img/large"


@pytest.mark.asyncio
async def test_recently_played_clamps_limit_and_parses_listens() -> None:
    fake = FakeSpotify()
    fake.api_responses.append(
        httpx.Response(
            200,
            json={
                "items": [
                    {"track": _track("t1", "One"), "played_at": "2024-05-01T12:00:00.123Z"},
                    {"track": _track("t2", "Two"), "played_at": "2024-05-01T11:55:00Z"},
                    {"track": None, "played_at": "2024-05-01T11:50:00Z"},
                ]
            },
        )
    )

    listens = await _client(fake).get_recently_played(limit=500)

    assert fake.api_requests[0].url.params["limit"] == "50"
    assert [listen.track_id for listen in listens] == ["t1", "t2"]
    assert listens[0].played_at == datetime(2024, 5, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)
    assert listens[0].external_url == "https://open.spotify.com/track/t1"


@pytest.mark.asyncio
async def test_401_refreshes_once_then_fails() -> None:
    fake = FakeSpotify()
    fake.api_responses.extend([httpx.Response(401), httpx.Response(401)])

    with pytest.raises(AuthenticationFailedError):
        await _client(fake).get_currently_playing()

    assert len(fake.token_requests) == 2
    assert [r.headers["Authorization"] for r in fake.api_requests] == [
        "Bearer access-1",
        "Bearer access-2",
    ]


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_used_next_time() -> None:
    fake = FakeSpotify()
    fake.rotate = True
    fake.api_responses.extend([httpx.Response(401), httpx.Response(204)])

    await _client(fake).get_currently_playing()

    second = parse_qs(fake.token_requests[1].content.decode())
    assert second["refresh_token"] == ["refresh-1"]


@pytest.mark.asyncio
async def test_token_endpoint_rejection_is_authentication_failed() -> None:
    fake = FakeSpotify()
    fake.token_status = 400

    with pytest.raises(AuthenticationFailedError):
        await _client(fake).get_recently_played()


@pytest.mark.asyncio
async def test_token_endpoint_rate_limit() -> None:
    fake = FakeSpotify()
    fake.token_status = 429

    with pytest.raises(RateLimitedError) as excinfo:
        await _client(fake).get_recently_played()
    assert excinfo.value.retry_after == 7


@pytest.mark.asyncio
async def test_missing_refresh_token_is_auth_config_missing() -> None:
    fake = FakeSpotify()
    client = _client(fake, spotify_refresh_token=None)

    with pytest.raises(AuthConfigMissingError):
        await client.get_currently_playing()
    assert fake.token_requests == []


def test_token_source_reports_missing_fields() -> None:
    integrations = _integrations(spotify_client_secret="  ", spotify_refresh_token=None)

    source = SpotifyTokenSource(integrations)

    assert source.configured is False
    assert source.provider == Provider.SPOTIFY
    assert integrations.missing_spotify_fields() == [
        "SPOTIFY_CLIENT_SECRET",
        "SPOTIFY_REFRESH_TOKEN",
    ]
