"""
FastAPI routes for the activity read API and the sync trigger.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Annotated, Any, Awaitable, Callable, Dict, Hashable, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from activity_sync.core.config import AppSettings
from activity_sync.core.errors import (
    ActivitySyncError,
    AuthenticationFailedError,
    NotFound,
    RateLimitedError,
)
from activity_sync.dependencies import (
    get_activity_store,
    get_app_settings,
    get_github_client,
    get_read_cache,
    get_spotify_client,
    get_sync_orchestrator,
    get_token_cache,
)
from activity_sync.models.activity import ContributionCalendar, DateRange, Provider
from activity_sync.schemas import (
    ActivityPayload,
    CommitPayload,
    ContributionDayPayload,
    HistoryEntry,
    NowPlayingPayload,
    RepoPayload,
    SyncMetadataPayload,
    TrackPayload,
)
from activity_sync.services.read_cache import (
    AGGREGATE,
    COMMITS,
    NOW_PLAYING,
    RECENT,
    CachePolicy,
)
from activity_sync.utils.timestamps import to_iso

router = APIRouter()
logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}
SPOTIFY_NOT_CONFIGURED = "No refresh token configured"


def _year_range(year: int, now: datetime) -> DateRange:
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    end = datetime(year, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    return DateRange(start=start, end=min(end, now))


def _rate_limit_message(exc: RateLimitedError) -> str:
    provider = (exc.provider or "provider").capitalize()
    if exc.retry_after is None:
        return f"{provider} rate limit reached. Please try again later."
    return f"{provider} rate limit reached. Try again in {exc.retry_after} seconds."


def _degraded(exc: ActivitySyncError, empty: Dict[str, Any]) -> JSONResponse:
    """Map an integration failure onto the client-facing response."""
    logger.warning("Serving degraded response: %s", exc.describe())
    if isinstance(exc, AuthenticationFailedError):
        raise HTTPException(status_code=HTTPStatus.UNAUTHORIZED, detail=exc.message)
    if isinstance(exc, RateLimitedError):
        headers = (
            {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
        )
        raise HTTPException(
            status_code=HTTPStatus.TOO_MANY_REQUESTS,
            detail=_rate_limit_message(exc),
            headers=headers,
        )
    content = {**empty, "error": exc.kind.value, "message": exc.message}
    return JSONResponse(content=content, headers=NO_STORE)


async def _serve_cached(
    cache: Any,
    key: Hashable,
    policy: CachePolicy,
    loader: Callable[[], Awaitable[Dict[str, Any]]],
    empty: Dict[str, Any],
) -> JSONResponse:
    try:
        payload = await cache.get(key, policy, loader)
    except ActivitySyncError as exc:
        return _degraded(exc, empty)
    except sqlite3.Error as exc:
        logger.error("Activity store unavailable: %s", exc)
        content = {**empty, "error": "StorageUnavailable", "message": "Activity store unavailable"}
        return JSONResponse(content=content, headers=NO_STORE)
    return JSONResponse(content=payload, headers={"Cache-Control": policy.cache_control})


def _matches(candidate: Optional[str], secret: Optional[str]) -> bool:
    if not candidate or not secret:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


def _authorize_sync(request: Request, settings: AppSettings) -> str:
    """Accept the cron shared secret or the operator admin token."""
    integrations = settings.integrations
    scheme, _, credential = request.headers.get("authorization", "").partition(" ")
    bearer = credential.strip() if scheme.lower() == "bearer" else None
    for candidate in (bearer, request.headers.get("x-cron-secret")):
        if _matches(candidate, integrations.cron_secret):
            return "cron"

    if _matches(request.headers.get("x-admin-token"), integrations.admin_api_token):
        return "admin"

    raise HTTPException(status_code=HTTPStatus.UNAUTHORIZED, detail="Unauthorized")


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck(
    token_cache: Annotated[Any, Depends(get_token_cache)],
) -> dict:
    """Simple health endpoint for monitoring."""
    return {
        "status": "ok",
        "integrations": {
            provider.value: token_cache.is_configured(provider) for provider in Provider
        },
    }


@router.get("/activity/github", status_code=HTTPStatus.OK)
async def list_github_activity(
    store: Annotated[Any, Depends(get_activity_store)],
    cache: Annotated[Any, Depends(get_read_cache)],
    limit: int = Query(20, ge=1, le=100),
) -> JSONResponse:
    """Recent commits from the activity store."""

    async def load() -> Dict[str, Any]:
        commits = store.list_recent_commits(limit=limit)
        metadata = store.get_sync_metadata(Provider.GITHUB)
        return {
            "activities": [CommitPayload.from_record(c).to_wire() for c in commits],
            "lastSyncedAt": to_iso(metadata.last_synced_at) if metadata else None,
        }

    return await _serve_cached(
        cache,
        ("activity.github", limit),
        RECENT,
        load,
        {"activities": [], "lastSyncedAt": None},
    )


@router.get("/activity/spotify/current", status_code=HTTPStatus.OK)
async def get_spotify_now_playing(
    token_cache: Annotated[Any, Depends(get_token_cache)],
    spotify: Annotated[Any, Depends(get_spotify_client)],
    cache: Annotated[Any, Depends(get_read_cache)],
) -> JSONResponse:
    if not token_cache.is_configured(Provider.SPOTIFY):
        return JSONResponse(
            content={"isPlaying": False, "message": SPOTIFY_NOT_CONFIGURED},
            headers={"Cache-Control": NOW_PLAYING.cache_control},
        )

    async def load() -> Dict[str, Any]:
        now_playing = await spotify.get_currently_playing()
        return NowPlayingPayload.from_now_playing(now_playing).to_wire()

    return await _serve_cached(
        cache, ("spotify.current",), NOW_PLAYING, load, {"isPlaying": False}
    )


@router.get("/activity/spotify/recent", status_code=HTTPStatus.OK)
async def list_spotify_recent(
    spotify: Annotated[Any, Depends(get_spotify_client)],
    cache: Annotated[Any, Depends(get_read_cache)],
    limit: int = Query(10, ge=1, le=50),
) -> JSONResponse:
    async def load() -> Dict[str, Any]:
        listens = await spotify.get_recently_played(limit)
        return {"tracks": [TrackPayload.from_listen(item).to_wire() for item in listens]}

    return await _serve_cached(
        cache, ("spotify.recent", limit), RECENT, load, {"tracks": []}
    )


@router.get("/activity/combined", status_code=HTTPStatus.OK)
async def get_combined_activity(
    settings: Annotated[Any, Depends(get_app_settings)],
    token_cache: Annotated[Any, Depends(get_token_cache)],
    github: Annotated[Any, Depends(get_github_client)],
    spotify: Annotated[Any, Depends(get_spotify_client)],
    cache: Annotated[Any, Depends(get_read_cache)],
    activity_limit: int = Query(5, ge=1, le=20, alias="activityLimit"),
    tracks_limit: int = Query(10, ge=1, le=50, alias="tracksLimit"),
) -> JSONResponse:
    """Contributions for this and last year, recent repository activity and tracks.

    Sections backed by an unconfigured provider come back empty.
    """
    login = settings.integrations.github_username
    github_ready = token_cache.is_configured(Provider.GITHUB)
    spotify_ready = token_cache.is_configured(Provider.SPOTIFY)

    async def contributions() -> ContributionCalendar:
        merged = ContributionCalendar()
        if not github_ready:
            return merged
        now = datetime.now(timezone.utc)
        calendars = await asyncio.gather(
            *(
                github.get_contribution_calendar(login, _year_range(year, now))
                for year in (now.year - 1, now.year)
            )
        )
        for calendar in calendars:
            if isinstance(calendar, NotFound):
                continue
            merged.total += calendar.total
            merged.days.extend(calendar.days)
        merged.days.sort(key=lambda d: d.day)
        return merged

    async def recent_activity() -> List[Any]:
        if not github_ready:
            return []
        return await github.list_recent_activity(login, activity_limit)

    async def recent_tracks() -> List[Any]:
        if not spotify_ready:
            return []
        return await spotify.get_recently_played(tracks_limit)

    async def load() -> Dict[str, Any]:
        calendar, events, listens = await asyncio.gather(
            contributions(), recent_activity(), recent_tracks()
        )
        return {
            "contributions": [ContributionDayPayload.from_day(d).to_wire() for d in calendar.days],
            "totalContributions": calendar.total,
            "recentActivity": [ActivityPayload.from_event(e).to_wire() for e in events],
            "spotifyTracks": [TrackPayload.from_listen(item).to_wire() for item in listens],
            "fetchedAt": to_iso(datetime.now(timezone.utc)),
        }

    return await _serve_cached(
        cache,
        ("activity.combined", login, activity_limit, tracks_limit),
        AGGREGATE,
        load,
        {
            "contributions": [],
            "totalContributions": 0,
            "recentActivity": [],
            "spotifyTracks": [],
            "fetchedAt": None,
        },
    )


@router.get("/activity/history", status_code=HTTPStatus.OK)
async def get_activity_history(
    store: Annotated[Any, Depends(get_activity_store)],
    cache: Annotated[Any, Depends(get_read_cache)],
    days: int = Query(7, ge=1, le=90),
) -> JSONResponse:
    """Stored commits with the tracks that were playing while they were made."""

    async def load() -> Dict[str, Any]:
        until = datetime.now(timezone.utc)
        since = until - timedelta(days=days)
        pairs = store.list_commits_with_tracks(since=since, until=until)
        entries = [
            HistoryEntry(
                commit=CommitPayload.from_record(commit),
                tracks=[TrackPayload.from_listen(item) for item in listens],
            ).to_wire()
            for commit, listens in pairs
        ]
        return {"entries": entries, "from": to_iso(since), "to": to_iso(until)}

    return await _serve_cached(
        cache, ("activity.history", days), RECENT, load, {"entries": []}
    )


@router.get("/github/commits", status_code=HTTPStatus.OK)
async def get_latest_commit(
    settings: Annotated[Any, Depends(get_app_settings)],
    github: Annotated[Any, Depends(get_github_client)],
    cache: Annotated[Any, Depends(get_read_cache)],
    repo: str = Query(..., min_length=1, description="Repository name."),
    owner: Optional[str] = Query(None, description="Repository owner; defaults to the synced user."),
) -> JSONResponse:
    owner = owner or settings.integrations.github_username

    async def load() -> Dict[str, Any]:
        result = await github.get_latest_commit(owner, repo)
        if isinstance(result, NotFound):
            return {"commit": None, "status": result.status}
        return {"commit": CommitPayload.from_record(result).to_wire(), "status": int(HTTPStatus.OK)}

    return await _serve_cached(
        cache, ("github.commits", owner, repo), COMMITS, load, {"commit": None}
    )


@router.get("/github/repo", status_code=HTTPStatus.OK)
async def get_repository(
    settings: Annotated[Any, Depends(get_app_settings)],
    github: Annotated[Any, Depends(get_github_client)],
    cache: Annotated[Any, Depends(get_read_cache)],
    repo: str = Query(..., min_length=1),
    owner: Optional[str] = Query(None),
) -> JSONResponse:
    owner = owner or settings.integrations.github_username

    async def load() -> Dict[str, Any]:
        result = await github.get_repo_meta(owner, repo)
        if isinstance(result, NotFound):
            return {"repo": None, "status": result.status}
        return {"repo": RepoPayload.from_meta(result).to_wire(), "status": int(HTTPStatus.OK)}

    return await _serve_cached(
        cache, ("github.repo", owner, repo), AGGREGATE, load, {"repo": None}
    )


@router.get("/github/contributions", status_code=HTTPStatus.OK)
async def get_contributions(
    settings: Annotated[Any, Depends(get_app_settings)],
    github: Annotated[Any, Depends(get_github_client)],
    cache: Annotated[Any, Depends(get_read_cache)],
    year: Optional[int] = Query(None, ge=2008),
) -> JSONResponse:
    now = datetime.now(timezone.utc)
    year = year or now.year
    if year > now.year:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST, detail="Year cannot be in the future."
        )
    login = settings.integrations.github_username

    async def load() -> Dict[str, Any]:
        result = await github.get_contribution_calendar(login, _year_range(year, now))
        calendar = ContributionCalendar() if isinstance(result, NotFound) else result
        return {
            "year": year,
            "totalContributions": calendar.total,
            "contributions": [ContributionDayPayload.from_day(d).to_wire() for d in calendar.days],
        }

    return await _serve_cached(
        cache,
        ("github.contributions", login, year),
        AGGREGATE,
        load,
        {"year": year, "totalContributions": 0, "contributions": []},
    )


@router.post("/sync", status_code=HTTPStatus.OK)
async def trigger_sync(
    request: Request,
    settings: Annotated[Any, Depends(get_app_settings)],
    orchestrator: Annotated[Any, Depends(get_sync_orchestrator)],
    cache: Annotated[Any, Depends(get_read_cache)],
    service: Optional[str] = Query(None, description="github, spotify or all."),
) -> dict:
    """Run one sync. Authorized by the cron secret or the admin token."""
    caller = _authorize_sync(request, settings)

    services: Optional[List[Provider]] = None
    if service and service != "all":
        try:
            services = [Provider(service)]
        except ValueError as exc:
            raise HTTPException(
                status_code=HTTPStatus.BAD_REQUEST,
                detail=f"Unknown service '{service}'. Expected github, spotify or all.",
            ) from exc

    logger.info("Sync triggered by %s (service=%s)", caller, service or "all")
    report = await orchestrator.sync_all(services)
    if any(result.new_items for result in report.results.values()):
        cache.invalidate()
    return report.to_dict()


@router.get("/sync/status", status_code=HTTPStatus.OK)
async def get_sync_status(
    request: Request,
    settings: Annotated[Any, Depends(get_app_settings)],
    store: Annotated[Any, Depends(get_activity_store)],
) -> dict:
    _authorize_sync(request, settings)
    try:
        metadata = {m.provider: m for m in store.list_sync_metadata()}
        totals = {
            Provider.GITHUB: store.count_commits(),
            Provider.SPOTIFY: store.count_listens(),
        }
    except sqlite3.Error as exc:
        logger.error("Activity store unavailable: %s", exc)
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Activity store unavailable.",
        ) from exc

    return {
        provider.value: (
            SyncMetadataPayload.from_metadata(
                metadata[provider], total_items=totals[provider]
            ).to_wire()
            if provider in metadata
            else None
        )
        for provider in Provider
    }
