"""
Token sources used by the token cache.

Spotify issues short-lived access tokens from a long-lived refresh token; the
refresh token may rotate on any exchange. GitHub uses a personal access token
that never expires, so its source simply hands the configured value back.
"""

from __future__ import annotations

import base64
import logging
from typing import Optional, Protocol

import httpx

from activity_sync.core.config import IntegrationConfig
from activity_sync.core.errors import (
    AuthConfigMissingError,
    AuthenticationFailedError,
    RateLimitedError,
    UpstreamUnavailableError,
)
from activity_sync.models.activity import Provider
from activity_sync.models.oauth import TokenGrant
from activity_sync.utils.http import decode_json, parse_retry_after

logger = logging.getLogger(__name__)


class TokenSource(Protocol):
    provider: Provider

    @property
    def configured(self) -> bool: ...

    @property
    def initial_refresh_token(self) -> Optional[str]: ...

    async def exchange(self, refresh_token: Optional[str]) -> TokenGrant: ...


class StaticTokenSource:
    """Hands out a pre-issued, non-expiring token."""

    def __init__(self, provider: Provider, token: Optional[str]) -> None:
        self.provider = provider
        self._token = token

    @property
    def configured(self) -> bool:
        return bool(self._token)

    @property
    def initial_refresh_token(self) -> Optional[str]:
        return None

    async def exchange(self, refresh_token: Optional[str]) -> TokenGrant:
        if not self._token:
            raise AuthConfigMissingError(
                f"No {self.provider.value} token configured",
                provider=self.provider.value,
            )
        return TokenGrant(access_token=self._token, expires_in=None)


class SpotifyTokenSource:
    """Exchange the Spotify refresh token for access tokens."""

    TOKEN_URL = "https://accounts.spotify.com/api/token"

    provider = Provider.SPOTIFY

    def __init__(
        self,
        integrations: IntegrationConfig,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._integrations = integrations
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self._integrations.spotify_configured

    @property
    def initial_refresh_token(self) -> Optional[str]:
        return self._integrations.spotify_refresh_token

    def _basic_auth_header(self) -> str:
        raw = f"{self._integrations.spotify_client_id}:{self._integrations.spotify_client_secret}"
        return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("utf-8")

    async def exchange(self, refresh_token: Optional[str]) -> TokenGrant:
        """Refresh the access token using the current refresh token."""
        if not self.configured or not refresh_token:
            missing = ", ".join(self._integrations.missing_spotify_fields()) or "refresh token"
            raise AuthConfigMissingError(
                f"Spotify credentials missing: {missing}", provider=self.provider.value
            )

        payload = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(self.TOKEN_URL, data=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(
                f"Spotify token endpoint unreachable: {exc}", provider=self.provider.value
            ) from exc

        if response.status_code == 429:
            raise RateLimitedError(
                "Spotify token endpoint is rate limiting requests",
                provider=self.provider.value,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 500:
            raise UpstreamUnavailableError(
                f"Spotify token endpoint returned {response.status_code}",
                provider=self.provider.value,
            )
        if response.status_code != 200:
            raise AuthenticationFailedError(
                f"Spotify token refresh failed: {response.status_code}",
                provider=self.provider.value,
            )

        token_payload = decode_json(response, self.provider.value)
        if not isinstance(token_payload, dict):
            token_payload = {}
        access_token = token_payload.get("access_token")
        expires_in = token_payload.get("expires_in")
        if not access_token or not isinstance(expires_in, (int, float)) or expires_in <= 0:
            raise AuthenticationFailedError(
                "Incomplete refresh payload returned from Spotify.",
                provider=self.provider.value,
            )

        rotated = token_payload.get("refresh_token")
        if rotated and rotated != refresh_token:
            logger.info("Spotify issued a rotated refresh token")

        return TokenGrant(
            access_token=access_token,
            expires_in=int(expires_in),
            refresh_token=rotated or refresh_token,
        )


__all__ = ["SpotifyTokenSource", "StaticTokenSource", "TokenSource"]
