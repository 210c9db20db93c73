"""Service layer exports."""

from .polling import AdaptivePoller, PollingController, PollingState, PollingTier, TIERS
from .read_cache import CachePolicy, SWRCache
from .sync_orchestrator import (
    ProviderSyncResult,
    SyncOrchestrator,
    SyncRunReport,
    SyncRunStatus,
)
from .token_cache import TokenCache

__all__ = [
    "AdaptivePoller",
    "CachePolicy",
    "PollingController",
    "PollingState",
    "PollingTier",
    "ProviderSyncResult",
    "SWRCache",
    "SyncOrchestrator",
    "SyncRunReport",
    "SyncRunStatus",
    "TIERS",
    "TokenCache",
]
