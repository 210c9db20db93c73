"""HTTP utilities providing the bounded 401 retry and status translation."""

from __future__ import annotations

import contextlib
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Iterator, Optional

import httpx

from activity_sync.core.errors import (
    AuthenticationFailedError,
    RateLimitedError,
    UpstreamUnavailableError,
)

if TYPE_CHECKING:  # pragma: no cover
    from activity_sync.models.activity import Provider
    from activity_sync.services.token_cache import TokenCache

logger = logging.getLogger(__name__)


class RetryConfig:
    """How many times a call may be retried after an upstream 401."""

    def __init__(self, *, auth_retries: int = 1) -> None:
        if auth_retries < 0:
            raise ValueError("auth_retries must be >= 0")
        self.auth_retries = auth_retries


DEFAULT_RETRY_CONFIG = RetryConfig(auth_retries=1)


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Parse a delta-seconds ``Retry-After`` header; dates are ignored."""
    if not value:
        return None
    try:
        return max(0, int(float(value.strip())))
    except ValueError:
        return None


def _rate_limit_hint(response: httpx.Response) -> Optional[int]:
    hint = parse_retry_after(response.headers.get("Retry-After"))
    if hint is not None:
        return hint
    reset = response.headers.get("X-RateLimit-Reset")
    if reset and reset.isdigit():
        return max(0, int(reset) - int(time.time()))
    return None


def raise_for_provider_status(
    response: httpx.Response,
    provider: str,
    *,
    allow_status: Iterable[int] = (404,),
) -> None:
    """Translate non-success responses into the error taxonomy.

    401 and anything in ``allow_status`` are left for the caller: 401 drives
    the retry loop and 404 is an expected result for some endpoints.
    """
    status = response.status_code
    if status < 400 or status == 401 or status in allow_status:
        return

    exhausted = response.headers.get("X-RateLimit-Remaining") == "0"
    if status == 429 or (status == 403 and exhausted):
        raise RateLimitedError(
            f"{provider} rate limit reached",
            provider=provider,
            retry_after=_rate_limit_hint(response),
        )
    if status >= 500:
        raise UpstreamUnavailableError(
            f"{provider} returned {status}", provider=provider
        )
    raise UpstreamUnavailableError(
        f"{provider} rejected the request with {status}", provider=provider
    )


def decode_json(response: httpx.Response, provider: str) -> Any:
    """Parse a provider response body, treating garbage as an upstream failure."""
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamUnavailableError(
            f"{provider} returned a malformed body ({response.status_code})",
            provider=provider,
        ) from exc


@contextlib.contextmanager
def malformed_payload(provider: str) -> Iterator[None]:
    """Turn lookups into an unexpected payload shape into ``UpstreamUnavailableError``."""
    try:
        yield
    except (KeyError, IndexError, TypeError, AttributeError, ValueError) as exc:
        raise UpstreamUnavailableError(
            f"{provider} returned an unexpected payload: {type(exc).__name__}: {exc}",
            provider=provider,
        ) from exc


async def request_with_auth_retry(
    send: Callable[[str], Awaitable[httpx.Response]],
    *,
    token_cache: "TokenCache",
    provider: "Provider",
    retry_config: RetryConfig | None = None,
    allow_status: Iterable[int] = (404,),
) -> httpx.Response:
    """Call ``send`` with a cached token, retrying after 401 per ``retry_config``.

    Every 401 invalidates the cached token so the next attempt runs with a
    freshly minted one. Once the retries are used up the 401 surfaces as
    ``AuthenticationFailedError``.
    """
    config = retry_config or DEFAULT_RETRY_CONFIG
    attempt = 0

    while True:
        token = await token_cache.get_access_token(provider)
        try:
            response = await send(token)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(
                f"{provider.value} request failed: {exc}", provider=provider.value
            ) from exc

        if response.status_code != 401:
            raise_for_provider_status(
                response, provider.value, allow_status=allow_status
            )
            return response

        token_cache.invalidate(provider)
        if attempt >= config.auth_retries:
            raise AuthenticationFailedError(
                f"{provider.value} rejected a freshly refreshed token",
                provider=provider.value,
            )
        attempt += 1
        logger.info("Retrying %s call after 401 (attempt %d)", provider.value, attempt)


__all__ = [
    "DEFAULT_RETRY_CONFIG",
    "RetryConfig",
    "decode_json",
    "malformed_payload",
    "parse_retry_after",
    "raise_for_provider_status",
    "request_with_auth_retry",
]
