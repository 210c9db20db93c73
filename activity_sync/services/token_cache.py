"""
Process-wide cache of provider access tokens.

Tokens are cheap to keep and comparatively expensive to mint, so each
provider's token is reused until shortly before it expires. Refreshes are
single-flight per provider: callers arriving while an exchange is
outstanding await that same exchange, which keeps rotating refresh tokens
from racing each other.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Dict, Iterable, Optional

from activity_sync.core.errors import AuthConfigMissingError
from activity_sync.models.activity import Provider
from activity_sync.models.oauth import AccessToken

if TYPE_CHECKING:  # pragma: no cover
    from activity_sync.clients.spotify_auth import TokenSource

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenCache:
    """Hold the current access token per provider and refresh on demand."""

    def __init__(
        self,
        sources: Iterable[TokenSource],
        *,
        safety_margin: timedelta = timedelta(seconds=60),
        clock: Clock = utc_now,
    ) -> None:
        self._sources: Dict[Provider, TokenSource] = {s.provider: s for s in sources}
        self._safety_margin = safety_margin
        self._clock = clock
        self._tokens: Dict[Provider, AccessToken] = {}
        self._refresh_tokens: Dict[Provider, Optional[str]] = {
            provider: source.initial_refresh_token
            for provider, source in self._sources.items()
        }
        self._inflight: Dict[Provider, asyncio.Future[AccessToken]] = {}

    def is_configured(self, provider: Provider) -> bool:
        source = self._sources.get(provider)
        return source is not None and source.configured

    def _source_for(self, provider: Provider) -> TokenSource:
        source = self._sources.get(provider)
        if source is None or not source.configured:
            raise AuthConfigMissingError(
                f"{provider.value} integration not configured", provider=provider.value
            )
        return source

    async def get_access_token(self, provider: Provider) -> str:
        """Return a usable access token, refreshing it when close to expiry."""
        source = self._source_for(provider)
        cached = self._tokens.get(provider)
        if cached is not None and cached.is_usable(self._clock(), self._safety_margin):
            return cached.value

        token = await self._refresh(provider, source)
        return token.value

    def invalidate(self, provider: Provider) -> None:
        """Drop the cached token so the next caller performs a refresh."""
        if self._tokens.pop(provider, None) is not None:
            logger.info("Invalidated cached %s access token", provider.value)

    def expires_at(self, provider: Provider) -> Optional[datetime]:
        token = self._tokens.get(provider)
        return token.expires_at if token else None

    async def _refresh(self, provider: Provider, source: TokenSource) -> AccessToken:
        inflight = self._inflight.get(provider)
        if inflight is None or inflight.done():
            inflight = asyncio.ensure_future(self._exchange(provider, source))
            self._inflight[provider] = inflight

            def _clear(future: asyncio.Future, key: Provider = provider) -> None:
                if self._inflight.get(key) is future:
                    del self._inflight[key]

            inflight.add_done_callback(_clear)

        # Shielded so a cancelled waiter does not abort the shared exchange.
        return await asyncio.shield(inflight)

    async def _exchange(self, provider: Provider, source: TokenSource) -> AccessToken:
        issued_at = self._clock()
        grant = await source.exchange(self._refresh_tokens.get(provider))

        expires_at = (
            issued_at + timedelta(seconds=grant.expires_in)
            if grant.expires_in
            else None
        )
        if grant.refresh_token:
            self._refresh_tokens[provider] = grant.refresh_token

        token = self._tokens.get(provider)
        if token is None:
            token = AccessToken(
                provider=provider,
                value=grant.access_token,
                expires_at=expires_at,
                refresh_token=self._refresh_tokens.get(provider),
            )
            self._tokens[provider] = token
        else:
            token.value = grant.access_token
            token.expires_at = expires_at
            token.refresh_token = self._refresh_tokens.get(provider)

        logger.info(
            "Refreshed %s access token (expires_at=%s)",
            provider.value,
            expires_at.isoformat() if expires_at else "never",
        )
        return token


__all__ = ["Clock", "TokenCache", "utc_now"]
