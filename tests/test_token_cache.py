from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from activity_sync.clients.spotify_auth import StaticTokenSource
from activity_sync.core.errors import AuthConfigMissingError, AuthenticationFailedError
from activity_sync.models.activity import Provider
from activity_sync.models.oauth import TokenGrant
from activity_sync.services.token_cache import TokenCache


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class CountingSpotifySource:
    provider = Provider.SPOTIFY
    configured = True
    initial_refresh_token = "refresh-0"

    def __init__(
        self,
        *,
        expires_in: int = 3600,
        rotate: bool = False,
        delay: float = 0.01,
        failures: int = 0,
    ) -> None:
        self.expires_in = expires_in
        self.rotate = rotate
        self.delay = delay
        self.failures = failures
        self.calls: list[str | None] = []

    async def exchange(self, refresh_token: str | None) -> TokenGrant:
        self.calls.append(refresh_token)
        await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise AuthenticationFailedError("invalid_grant", provider="spotify")
        count = len(self.calls)
        return TokenGrant(
            access_token=f"access-{count}",
            expires_in=self.expires_in,
            refresh_token=f"refresh-{count}" if self.rotate else None,
        )


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_exchange() -> None:
    source = CountingSpotifySource(delay=0.05)
    cache = TokenCache([source], clock=FakeClock())

    tokens = await asyncio.gather(
        *(cache.get_access_token(Provider.SPOTIFY) for _ in range(5))
    )

    assert tokens == ["access-1"] * 5
    assert source.calls == ["refresh-0"]


@pytest.mark.asyncio
async def test_token_reused_until_safety_margin() -> None:
    clock = FakeClock()
    source = CountingSpotifySource(expires_in=3600)
    cache = TokenCache([source], safety_margin=timedelta(seconds=60), clock=clock)

    assert await cache.get_access_token(Provider.SPOTIFY) == "access-1"

    clock.advance(3500)
    assert await cache.get_access_token(Provider.SPOTIFY) == "access-1"

    clock.advance(40)
    assert await cache.get_access_token(Provider.SPOTIFY) == "access-2"
    assert len(source.calls) == 2
    assert cache.expires_at(Provider.SPOTIFY) == clock.now + timedelta(seconds=3600)


@pytest.mark.asyncio
async def test_rotated_refresh_token_used_for_next_exchange() -> None:
    clock = FakeClock()
    source = CountingSpotifySource(expires_in=120, rotate=True)
    cache = TokenCache([source], clock=clock)

    await cache.get_access_token(Provider.SPOTIFY)
    clock.advance(120)
    await cache.get_access_token(Provider.SPOTIFY)

    assert source.calls == ["refresh-0", "refresh-1"]


@pytest.mark.asyncio
async def test_invalidate_forces_refresh() -> None:
    source = CountingSpotifySource()
    cache = TokenCache([source], clock=FakeClock())

    await cache.get_access_token(Provider.SPOTIFY)
    cache.invalidate(Provider.SPOTIFY)
    token = await cache.get_access_token(Provider.SPOTIFY)

    assert token == "access-2"
    assert len(source.calls) == 2


@pytest.mark.asyncio
async def test_failed_exchange_reaches_every_waiter_and_is_not_cached() -> None:
    source = CountingSpotifySource(failures=1, delay=0.05)
    cache = TokenCache([source], clock=FakeClock())

    results = await asyncio.gather(
        cache.get_access_token(Provider.SPOTIFY),
        cache.get_access_token(Provider.SPOTIFY),
        return_exceptions=True,
    )

    assert all(isinstance(r, AuthenticationFailedError) for r in results)
    assert len(source.calls) == 1

    assert await cache.get_access_token(Provider.SPOTIFY) == "access-2"


@pytest.mark.asyncio
async def test_static_github_token_never_expires() -> None:
    clock = FakeClock()
    cache = TokenCache([StaticTokenSource(Provider.GITHUB, "ghp_test")], clock=clock)

    assert await cache.get_access_token(Provider.GITHUB) == "ghp_test"
    clock.advance(10 * 365 * 24 * 3600)
    assert await cache.get_access_token(Provider.GITHUB) == "ghp_test"
    assert cache.expires_at(Provider.GITHUB) is None


@pytest.mark.asyncio
async def test_missing_credentials_raise_auth_config_missing() -> None:
    cache = TokenCache([StaticTokenSource(Provider.GITHUB, None)])

    assert not cache.is_configured(Provider.GITHUB)
    assert not cache.is_configured(Provider.SPOTIFY)

    with pytest.raises(AuthConfigMissingError):
        await cache.get_access_token(Provider.GITHUB)
    with pytest.raises(AuthConfigMissingError):
        await cache.get_access_token(Provider.SPOTIFY)
