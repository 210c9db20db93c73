"""
In-memory access token state held by the token cache.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from activity_sync.models.activity import Provider


@dataclass(slots=True)
class AccessToken:
    """Current access token for one provider. Never persisted."""

    provider: Provider
    value: str
    expires_at: Optional[datetime]
    refresh_token: Optional[str] = None

    def is_usable(self, now: datetime, safety_margin: timedelta) -> bool:
        """True while ``now`` is before the expiry minus the safety margin."""
        if self.expires_at is None:
            return True
        return now < self.expires_at - safety_margin


@dataclass(frozen=True, slots=True)
class TokenGrant:
    """Result of one exchange against a provider's token endpoint."""

    access_token: str
    expires_in: Optional[int]
    refresh_token: Optional[str] = None


__all__ = ["AccessToken", "TokenGrant"]
