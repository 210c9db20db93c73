"""
Pull provider data into the activity store.

Each provider syncs independently: it fetches, inserts whatever the store
does not already hold, and overwrites its metadata row with the outcome. A
failure in one provider never rolls back the other. Re-running a sync over
the same upstream data is a no-op because the store ignores duplicates.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from activity_sync.clients.activity_store import ActivityStore
from activity_sync.clients.github import GitHubClient
from activity_sync.clients.spotify import SpotifyClient
from activity_sync.core.errors import (
    ActivitySyncError,
    ErrorKind,
    SyncTimeoutError,
    UpstreamUnavailableError,
)
from activity_sync.models.activity import Provider, SpotifyListen, SyncOutcome
from activity_sync.services.token_cache import Clock, TokenCache, utc_now
from activity_sync.utils.timestamps import to_iso

logger = logging.getLogger(__name__)

LINK_WINDOW = timedelta(minutes=5)


class SyncRunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class ProviderSyncResult:
    provider: Provider
    success: bool
    new_items: int = 0
    fetched_items: int = 0
    total_items: int = 0
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    synced_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "newItems": self.new_items,
            "fetchedItems": self.fetched_items,
            "totalItems": self.total_items,
            "lastSyncAt": to_iso(self.synced_at),
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class SyncRunReport:
    status: SyncRunStatus
    started_at: datetime
    finished_at: datetime
    results: Dict[Provider, ProviderSyncResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == SyncRunStatus.SUCCEEDED

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "status": self.status.value,
            "duration": self.duration_ms,
        }
        for provider, result in self.results.items():
            payload[provider.value] = result.to_dict()
        return payload


def summarize(results: Iterable[ProviderSyncResult]) -> SyncRunStatus:
    """Fold per-provider outcomes into the run's terminal status."""
    results = list(results)
    if any(r.error_kind == ErrorKind.TIMEOUT for r in results):
        return SyncRunStatus.TIMEOUT
    if not results:
        return SyncRunStatus.SUCCEEDED
    succeeded = sum(1 for r in results if r.success)
    if succeeded == len(results):
        return SyncRunStatus.SUCCEEDED
    if succeeded == 0:
        return SyncRunStatus.FAILED
    return SyncRunStatus.PARTIALLY_FAILED


class SyncOrchestrator:
    """Run GitHub and Spotify syncs against one store."""

    def __init__(
        self,
        *,
        store: ActivityStore,
        token_cache: TokenCache,
        github_client: GitHubClient,
        spotify_client: SpotifyClient,
        github_username: str,
        deadline_seconds: float = 60.0,
        github_window: timedelta = timedelta(days=90),
        spotify_batch_size: int = 50,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._tokens = token_cache
        self._github = github_client
        self._spotify = spotify_client
        self._github_username = github_username
        self._deadline = deadline_seconds
        self._github_window = github_window
        self._spotify_batch_size = spotify_batch_size
        self._clock = clock
        self.state = SyncRunStatus.IDLE
        self.last_report: Optional[SyncRunReport] = None

    def enabled_providers(self) -> List[Provider]:
        return [p for p in Provider if self._tokens.is_configured(p)]

    async def sync_github(self) -> ProviderSyncResult:
        return await self._run_provider(Provider.GITHUB, self._fetch_github)

    async def sync_spotify(self) -> ProviderSyncResult:
        return await self._run_provider(Provider.SPOTIFY, self._fetch_spotify)

    async def sync_all(
        self, services: Optional[Iterable[Provider]] = None
    ) -> SyncRunReport:
        """Sync the requested providers concurrently under the run deadline.

        With no explicit selection only configured providers run. A provider
        named explicitly is always attempted, so a missing credential shows
        up as a recorded failure instead of being skipped silently.
        """
        providers = list(services) if services is not None else self.enabled_providers()
        runners: Dict[Provider, Callable[[], Awaitable[ProviderSyncResult]]] = {
            Provider.GITHUB: self.sync_github,
            Provider.SPOTIFY: self.sync_spotify,
        }

        started_at = self._clock()
        self.state = SyncRunStatus.RUNNING
        results: Dict[Provider, ProviderSyncResult] = {}
        try:
            tasks = {
                asyncio.ensure_future(runners[provider]()): provider
                for provider in dict.fromkeys(providers)
            }
            if tasks:
                done, pending = await asyncio.wait(tasks, timeout=self._deadline)
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                for task in done:
                    results[tasks[task]] = task.result()
                for task in pending:
                    provider = tasks[task]
                    results[provider] = self._record_failure(
                        provider,
                        SyncTimeoutError(
                            f"{provider.value} sync exceeded {self._deadline:g}s deadline",
                            provider=provider.value,
                        ),
                    )
        finally:
            self.state = SyncRunStatus.IDLE

        ordered = {p: results[p] for p in Provider if p in results}
        report = SyncRunReport(
            status=summarize(ordered.values()),
            started_at=started_at,
            finished_at=self._clock(),
            results=ordered,
        )
        self.last_report = report
        logger.info(
            "Sync run finished status=%s duration_ms=%d providers=%s",
            report.status.value,
            report.duration_ms,
            ",".join(p.value for p in ordered) or "none",
        )
        return report

    async def _run_provider(
        self,
        provider: Provider,
        fetch: Callable[[], Awaitable[Tuple[int, int]]],
    ) -> ProviderSyncResult:
        try:
            fetched, new_items = await fetch()
            synced_at = self._clock()
            self._store.record_sync_attempt(
                provider,
                status=SyncOutcome.SUCCESS,
                synced_at=synced_at,
                new_items=new_items,
            )
        except ActivitySyncError as exc:
            return self._record_failure(provider, exc)
        except Exception as exc:  # pylint: disable=broad-except
            # Anything outside the taxonomy still ends as a recorded failure.
            logger.exception("Unexpected error while syncing %s", provider.value)
            return self._record_failure(
                provider,
                UpstreamUnavailableError(
                    f"{type(exc).__name__}: {exc}", provider=provider.value
                ),
            )

        logger.info(
            "Synced %s: fetched=%d new=%d", provider.value, fetched, new_items
        )
        return ProviderSyncResult(
            provider=provider,
            success=True,
            new_items=new_items,
            fetched_items=fetched,
            total_items=self._total_items(provider),
            synced_at=synced_at,
        )

    def _record_failure(
        self, provider: Provider, exc: ActivitySyncError
    ) -> ProviderSyncResult:
        synced_at = self._clock()
        description = exc.describe()
        logger.warning("Sync of %s failed: %s", provider.value, description)
        try:
            self._store.record_sync_attempt(
                provider,
                status=SyncOutcome.FAILURE,
                synced_at=synced_at,
                error=description,
            )
        except sqlite3.Error as store_exc:
            logger.error(
                "Could not record %s sync metadata: %s", provider.value, store_exc
            )
        return ProviderSyncResult(
            provider=provider,
            success=False,
            total_items=self._total_items(provider),
            error_kind=exc.kind,
            error=description,
            synced_at=synced_at,
        )

    def _total_items(self, provider: Provider) -> int:
        try:
            if provider == Provider.GITHUB:
                return self._store.count_commits()
            return self._store.count_listens()
        except sqlite3.Error as exc:
            logger.error("Could not count stored %s items: %s", provider.value, exc)
            return 0

    async def _fetch_github(self) -> Tuple[int, int]:
        since = self._clock() - self._github_window
        commits = await self._github.list_recent_commits(self._github_username, since)
        return len(commits), self._store.insert_commits(commits)

    async def _fetch_spotify(self) -> Tuple[int, int]:
        listens = await self._spotify.get_recently_played(self._spotify_batch_size)
        linked: List[SpotifyListen] = []
        for listen in listens:
            commit = self._store.find_commit_near(listen.played_at, LINK_WINDOW)
            if commit is not None:
                listen = replace(listen, linked_commit_hash=commit.hash)
            linked.append(listen)
        return len(listens), self._store.insert_listens(linked)


__all__ = [
    "LINK_WINDOW",
    "ProviderSyncResult",
    "SyncOrchestrator",
    "SyncRunReport",
    "SyncRunStatus",
    "summarize",
]
