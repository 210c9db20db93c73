"""Public schema exports."""

from .activity import (
    ActivityPayload,
    CamelModel,
    CommitPayload,
    ContributionDayPayload,
    HistoryEntry,
    NowPlayingPayload,
    RepoPayload,
    SyncMetadataPayload,
    TrackPayload,
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
