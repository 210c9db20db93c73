"""
Error taxonomy shared by the provider clients, the sync orchestrator and the
read routes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    AUTH_CONFIG_MISSING = "AuthConfigMissing"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    RATE_LIMITED = "RateLimited"
    NOT_FOUND = "NotFound"
    TIMEOUT = "Timeout"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"


class ActivitySyncError(Exception):
    """Base class for failures raised while talking to an integration."""

    kind: ErrorKind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(self, message: str, *, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider

    def describe(self) -> str:
        """Render as ``"<kind>: <message>"`` for persisted sync metadata."""
        return f"{self.kind.value}: {self.message}"


class AuthConfigMissingError(ActivitySyncError):
    """Raised when a provider's credentials are not configured."""

    kind = ErrorKind.AUTH_CONFIG_MISSING


class AuthenticationFailedError(ActivitySyncError):
    """Raised when a token refresh or the single 401 retry is exhausted."""

    kind = ErrorKind.AUTHENTICATION_FAILED


class RateLimitedError(ActivitySyncError):
    """Raised when the provider throttles us. Callers must back off."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class UpstreamUnavailableError(ActivitySyncError):
    """Raised on network failures and 5xx responses from a provider."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class SyncTimeoutError(ActivitySyncError):
    """Raised when a sync run exceeds its deadline."""

    kind = ErrorKind.TIMEOUT


@dataclass(frozen=True, slots=True)
class NotFound:
    """Returned instead of raising when a resource is absent upstream."""

    resource: str
    status: int = 404


__all__ = [
    "ActivitySyncError",
    "AuthConfigMissingError",
    "AuthenticationFailedError",
    "ErrorKind",
    "NotFound",
    "RateLimitedError",
    "SyncTimeoutError",
    "UpstreamUnavailableError",
]
