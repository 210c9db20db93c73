"""
Pydantic models for the read and sync API payloads.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import date as Date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from activity_sync.models.activity import (
    ActivityEvent,
    CommitRecord,
    ContributionDay,
    NowPlaying,
    RepoMeta,
    SpotifyListen,
    SpotifyTrack,
    SyncMetadata,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CommitPayload(CamelModel):
    """A stored or live commit."""

    hash: str
    short_hash: str
    message: str
    author_name: str
    repository: str
    url: str
    committed_at: datetime

    @classmethod
    def from_record(cls, record: CommitRecord) -> "CommitPayload":
        return cls(
            hash=record.hash,
            short_hash=record.short_hash,
            message=record.message,
            author_name=record.author_name,
            repository=record.repo_full_name,
            url=record.url,
            committed_at=record.committed_at,
        )


class TrackPayload(CamelModel):
    """A Spotify track, optionally with the time it was played."""

    id: str
    name: str
    artist: str
    album: str
    url: str
    image: str
    duration_ms: int = 0
    played_at: Optional[datetime] = None
    linked_commit_hash: Optional[str] = None

    @classmethod
    def from_track(cls, track: SpotifyTrack) -> "TrackPayload":
        return cls(
            id=track.track_id,
            name=track.name,
            artist=track.artist,
            album=track.album,
            url=track.external_url,
            image=track.image_url,
            duration_ms=track.duration_ms,
        )

    @classmethod
    def from_listen(cls, listen: SpotifyListen) -> "TrackPayload":
        return cls(
            id=listen.track_id,
            name=listen.name,
            artist=listen.artist,
            album=listen.album,
            url=listen.external_url,
            image=listen.image_url,
            duration_ms=listen.duration_ms,
            played_at=listen.played_at,
            linked_commit_hash=listen.linked_commit_hash,
        )


class NowPlayingPayload(CamelModel):
    is_playing: bool
    track: Optional[TrackPayload] = None
    progress_ms: int = 0
    duration_ms: int = 0
    message: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_now_playing(cls, now_playing: NowPlaying) -> "NowPlayingPayload":
        return cls(
            is_playing=now_playing.is_playing,
            track=TrackPayload.from_track(now_playing.track) if now_playing.track else None,
            progress_ms=now_playing.progress_ms,
            duration_ms=now_playing.duration_ms,
        )


class ActivityPayload(CamelModel):
    id: str
    type: str
    title: str
    description: str
    repository: str
    url: str
    timestamp: datetime
    is_private: bool = False

    @classmethod
    def from_event(cls, event: ActivityEvent) -> "ActivityPayload":
        return cls(
            id=event.id,
            type=event.type,
            title=event.title,
            description=event.description,
            repository=event.repository,
            url=event.url,
            timestamp=event.timestamp,
            is_private=event.is_private,
        )


class ContributionDayPayload(CamelModel):
    date: Date
    count: int

    @classmethod
    def from_day(cls, day: ContributionDay) -> "ContributionDayPayload":
        return cls(date=day.day, count=day.count)


class RepoPayload(CamelModel):
    full_name: str
    description: Optional[str] = None
    url: str
    stars: int = 0
    forks: int = 0
    language: Optional[str] = None
    default_branch: str = "main"
    pushed_at: Optional[datetime] = None
    is_private: bool = False

    @classmethod
    def from_meta(cls, meta: RepoMeta) -> "RepoPayload":
        return cls(
            full_name=meta.full_name,
            description=meta.description,
            url=meta.url,
            stars=meta.stars,
            forks=meta.forks,
            language=meta.language,
            default_branch=meta.default_branch,
            pushed_at=meta.pushed_at,
            is_private=meta.is_private,
        )


class HistoryEntry(CamelModel):
    """A stored commit with the tracks that were playing around it."""

    commit: CommitPayload
    tracks: List[TrackPayload] = Field(default_factory=list)


class SyncMetadataPayload(CamelModel):
    provider: str
    last_synced_at: datetime
    last_status: str
    last_error: Optional[str] = None
    sync_count: int = 0
    last_new_items: int = 0
    total_items: int = 0

    @classmethod
    def from_metadata(cls, metadata: SyncMetadata, *, total_items: int = 0) -> "SyncMetadataPayload":
        return cls(
            provider=metadata.provider.value,
            last_synced_at=metadata.last_synced_at,
            last_status=metadata.last_status.value,
            last_error=metadata.last_error,
            sync_count=metadata.sync_count,
            last_new_items=metadata.last_new_items,
            total_items=total_items,
        )


__all__ = [
    "ActivityPayload",
    "CamelModel",
    "CommitPayload",
    "ContributionDayPayload",
    "HistoryEntry",
    "NowPlayingPayload",
    "RepoPayload",
    "SyncMetadataPayload",
    "TrackPayload",
]
