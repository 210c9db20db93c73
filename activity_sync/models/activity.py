"""
Canonical records produced by the provider clients and persisted by the
activity store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional


class Provider(str, Enum):
    GITHUB = "github"
    SPOTIFY = "spotify"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class CommitRecord:
    """A single commit. Unique per ``(repo_full_name, hash)``."""

    hash: str
    message: str
    author_name: str
    repo_full_name: str
    url: str
    committed_at: datetime

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


@dataclass(frozen=True, slots=True)
class SpotifyTrack:
    track_id: str
    name: str
    artist: str
    album: str
    external_url: str
    image_url: str
    duration_ms: int = 0


@dataclass(frozen=True, slots=True)
class SpotifyListen:
    """One play of a track. Unique per ``(track_id, played_at)``."""

    track_id: str
    name: str
    artist: str
    album: str
    external_url: str
    image_url: str
    played_at: datetime
    duration_ms: int = 0
    linked_commit_hash: Optional[str] = None

    @classmethod
    def from_track(cls, track: SpotifyTrack, played_at: datetime) -> "SpotifyListen":
        return cls(
            track_id=track.track_id,
            name=track.name,
            artist=track.artist,
            album=track.album,
            external_url=track.external_url,
            image_url=track.image_url,
            played_at=played_at,
            duration_ms=track.duration_ms,
        )


@dataclass(frozen=True, slots=True)
class NowPlaying:
    is_playing: bool
    track: Optional[SpotifyTrack] = None
    progress_ms: int = 0
    duration_ms: int = 0


@dataclass(slots=True)
class SyncMetadata:
    """Outcome of the most recent sync attempt for one provider."""

    provider: Provider
    last_synced_at: datetime
    last_status: SyncOutcome
    last_error: Optional[str] = None
    sync_count: int = 0
    last_new_items: int = 0


@dataclass(frozen=True, slots=True)
class RepoMeta:
    full_name: str
    description: Optional[str]
    url: str
    stars: int
    forks: int
    language: Optional[str]
    default_branch: str
    pushed_at: Optional[datetime]
    is_private: bool = False


@dataclass(frozen=True, slots=True)
class ContributionDay:
    day: date
    count: int


@dataclass(slots=True)
class ContributionCalendar:
    total: int = 0
    days: List[ContributionDay] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DateRange:
    start: datetime
    end: datetime


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    """A public GitHub event normalized for display."""

    id: str
    type: str
    title: str
    description: str
    repository: str
    url: str
    timestamp: datetime
    is_private: bool = False


__all__ = [
    "ActivityEvent",
    "CommitRecord",
    "ContributionCalendar",
    "ContributionDay",
    "DateRange",
    "NowPlaying",
    "Provider",
    "RepoMeta",
    "SpotifyListen",
    "SpotifyTrack",
    "SyncMetadata",
    "SyncOutcome",
]
