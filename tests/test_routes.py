try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import dataclasses
import sqlite3
from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from activity_sync.clients.activity_store import ActivityStore
from activity_sync.clients.spotify import SpotifyClient
from activity_sync.clients.spotify_auth import StaticTokenSource
from activity_sync.core.errors import (
    AuthenticationFailedError,
    NotFound,
    RateLimitedError,
    UpstreamUnavailableError,
)
from activity_sync.main import app
from activity_sync.models.activity import (
    ActivityEvent,
    CommitRecord,
    ContributionCalendar,
    ContributionDay,
    DateRange,
    Provider,
    RepoMeta,
    SpotifyListen,
)
from activity_sync.services.read_cache import AGGREGATE, COMMITS, RECENT, SWRCache
from activity_sync.services.sync_orchestrator import SyncOrchestrator
from activity_sync.services.token_cache import TokenCache

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

COMMIT = CommitRecord(
    hash="0123456789abcdef",
    message="Fix flaky sync",
    author_name="Octo",
    repo_full_name="octocat/app",
    url="https://github.com/octocat/app/commit/0123456789abcdef",
    committed_at=NOW,
)

LISTEN = SpotifyListen(
    track_id="t1",
    name="Song",
    artist="Band",
    album="Record",
    external_url="https://open.spotify.com/track/t1",
    image_url="https://img",
    played_at=NOW,
    duration_ms=200000,
)


class StubTokens:
    def __init__(self, *configured: Provider) -> None:
        self.configured = set(configured)

    def is_configured(self, provider: Provider) -> bool:
        return provider in self.configured


REPO = RepoMeta(
    full_name="octocat/app",
    description="Activity feed",
    url="https://github.com/octocat/app",
    stars=12,
    forks=3,
    language="Python",
    default_branch="main",
    pushed_at=NOW,
)


def _event(repo: str, minutes: int = 0) -> ActivityEvent:
    return ActivityEvent(
        id=f"evt-{repo}",
        type="push",
        title=f"Pushed to {repo}",
        description="Fix flaky sync",
        repository=repo,
        url=f"https://github.com/{repo}",
        timestamp=NOW - timedelta(minutes=minutes),
    )


class FakeGitHub:
    def __init__(self) -> None:
        self.latest: object = COMMIT
        self.error: Exception | None = None
        self.commits = [COMMIT]
        self.calendars: dict[int, object] = {}
        self.calendar_requests: list[tuple[str, DateRange]] = []
        self.events: list[ActivityEvent] = []
        self.activity_limits: list[int] = []
        self.repo: object = REPO

    async def get_latest_commit(self, owner: str, repo: str):
        if self.error:
            raise self.error
        return self.latest

    async def list_recent_commits(self, login: str, since: datetime):
        return list(self.commits)

    async def get_contribution_calendar(self, login: str, date_range: DateRange):
        self.calendar_requests.append((login, date_range))
        return self.calendars.get(date_range.start.year, NotFound(login))

    async def list_recent_activity(self, login: str, limit: int = 5):
        self.activity_limits.append(limit)
        return self.events[:limit]

    async def get_repo_meta(self, owner: str, repo: str):
        if self.error:
            raise self.error
        return self.repo


class FakeSpotify:
    def __init__(self) -> None:
        self.error: Exception | None = None
        self.limits: list[int] = []

    async def get_recently_played(self, limit: int = 10):
        self.limits.append(limit)
        if self.error:
            raise self.error
        return [LISTEN][:limit]


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture()
def fakes(tmp_path):
    from activity_sync import dependencies

    tokens = StubTokens(Provider.GITHUB)
    github = FakeGitHub()
    spotify = FakeSpotify()
    store = ActivityStore(str(tmp_path / "activity.db"))
    cache = SWRCache()

    def orchestrator() -> SyncOrchestrator:
        return SyncOrchestrator(
            store=store,
            token_cache=tokens,
            github_client=github,
            spotify_client=spotify,
            github_username="octocat",
            clock=lambda: NOW,
        )

    app.dependency_overrides.clear()
    app.dependency_overrides.update(
        {
            dependencies.get_token_cache: lambda: tokens,
            dependencies.get_github_client: lambda: github,
            dependencies.get_spotify_client: lambda: spotify,
            dependencies.get_activity_store: lambda: store,
            dependencies.get_read_cache: lambda: cache,
            dependencies.get_sync_orchestrator: orchestrator,
        }
    )

    yield tokens, github, spotify, store

    app.dependency_overrides.clear()


@pytest.fixture()
async def client(fakes):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as test_client:
        yield test_client


async def test_health_reports_configured_integrations(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "integrations": {"github": True, "spotify": False},
    }


async def test_now_playing_without_spotify_credentials_is_not_an_error(client):
    response = await client.get("/api/activity/spotify/current")

    assert response.status_code == 200
    assert response.json() == {
        "isPlaying": False,
        "message": "No refresh token configured",
    }


async def test_latest_commit_is_served_with_cache_headers(client):
    response = await client.get("/api/github/commits", params={"repo": "app"})

    assert response.status_code == 200
    assert response.headers["cache-control"] == COMMITS.cache_control
    body = response.json()
    assert body["status"] == 200
    assert body["commit"]["shortHash"] == "0123456"
    assert body["commit"]["repository"] == "octocat/app"


async def test_missing_repository_is_a_value_not_an_error(fakes, client):
    _, github, _, _ = fakes
    github.latest = NotFound("octocat/missing")

    response = await client.get("/api/github/commits", params={"repo": "missing"})

    assert response.status_code == 200
    assert response.json() == {"commit": None, "status": 404}


async def test_rate_limit_surfaces_as_429_with_retry_after(fakes, client):
    _, github, _, _ = fakes
    github.error = RateLimitedError("GitHub rate limit reached", provider="github", retry_after=30)

    response = await client.get("/api/github/commits", params={"repo": "app"})

    assert response.status_code == 429
    assert response.headers["retry-after"] == "30"
    assert response.json()["detail"] == "Github rate limit reached. Try again in 30 seconds."


async def test_authentication_failure_surfaces_as_401(fakes, client):
    _, github, _, _ = fakes
    github.error = AuthenticationFailedError("GitHub rejected the token", provider="github")

    response = await client.get("/api/github/commits", params={"repo": "app"})

    assert response.status_code == 401


async def test_upstream_failure_degrades_to_empty_payload(fakes, client):
    _, _, spotify, _ = fakes
    spotify.error = UpstreamUnavailableError("Spotify returned 502", provider="spotify")

    response = await client.get("/api/activity/spotify/recent")

    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-store"
    assert response.json() == {
        "tracks": [],
        "error": "UpstreamUnavailable",
        "message": "Spotify returned 502",
    }


async def test_garbage_spotify_body_degrades_instead_of_erroring(client):
    from activity_sync import dependencies

    spotify = SpotifyClient(
        TokenCache([StaticTokenSource(Provider.SPOTIFY, "access-token")]),
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>oops</html>")
        ),
    )
    app.dependency_overrides[dependencies.get_spotify_client] = lambda: spotify

    response = await client.get("/api/activity/spotify/recent")

    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-store"
    body = response.json()
    assert body["tracks"] == []
    assert body["error"] == "UpstreamUnavailable"


async def test_stored_commits_are_listed(fakes, client):
    _, _, _, store = fakes
    store.insert_commits([COMMIT])

    response = await client.get("/api/activity/github", params={"limit": 5})

    assert response.status_code == 200
    assert response.headers["cache-control"] == RECENT.cache_control
    body = response.json()
    assert [item["hash"] for item in body["activities"]] == [COMMIT.hash]
    assert body["lastSyncedAt"] is None


async def test_sync_requires_a_secret(client):
    response = await client.post("/api/sync")

    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}

    wrong = await client.post("/api/sync", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401


async def test_sync_with_cron_secret_runs_configured_providers(fakes, client):
    _, _, _, store = fakes

    response = await client.post(
        "/api/sync", headers={"Authorization": "Bearer test-cron-secret"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "succeeded"
    assert body["github"]["newItems"] == 1
    assert "spotify" not in body
    assert store.count_commits() == 1


async def test_sync_with_admin_token_and_single_service(fakes, client):
    tokens, _, _, store = fakes
    tokens.configured.add(Provider.SPOTIFY)

    response = await client.post(
        "/api/sync",
        params={"service": "spotify"},
        headers={"X-Admin-Token": "test-admin-token"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["spotify"]["newItems"] == 1
    assert "github" not in body
    assert store.count_listens() == 1


async def test_sync_rejects_unknown_service(client):
    response = await client.post(
        "/api/sync",
        params={"service": "lastfm"},
        headers={"X-Cron-Secret": "test-cron-secret"},
    )

    assert response.status_code == 400


async def test_sync_status_reports_metadata(client):
    headers = {"Authorization": "Bearer test-cron-secret"}
    await client.post("/api/sync", headers=headers)

    response = await client.get("/api/sync/status", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["spotify"] is None
    assert body["github"]["lastStatus"] == "success"
    assert body["github"]["totalItems"] == 1


async def test_sync_status_is_503_when_store_is_unavailable(client):
    class BrokenStore:
        def list_sync_metadata(self):
            raise sqlite3.OperationalError("unable to open database file")

    from activity_sync import dependencies

    app.dependency_overrides[dependencies.get_activity_store] = lambda: BrokenStore()

    response = await client.get(
        "/api/sync/status", headers={"Authorization": "Bearer test-cron-secret"}
    )

    assert response.status_code == 503


async def test_combined_merges_two_years_of_contributions(fakes, client):
    _, github, _, _ = fakes
    this_year = datetime.now(timezone.utc).year
    github.calendars = {
        this_year - 1: ContributionCalendar(
            total=4, days=[ContributionDay(day=date(this_year - 1, 12, 30), count=4)]
        ),
        this_year: ContributionCalendar(
            total=3, days=[ContributionDay(day=date(this_year, 1, 1), count=3)]
        ),
    }
    github.events = [_event("octocat/app"), _event("octocat/site", minutes=5)]

    response = await client.get("/api/activity/combined")

    assert response.status_code == 200
    assert response.headers["cache-control"] == AGGREGATE.cache_control
    body = response.json()
    assert body["totalContributions"] == 7
    assert body["contributions"] == [
        {"date": f"{this_year - 1}-12-30", "count": 4},
        {"date": f"{this_year}-01-01", "count": 3},
    ]
    assert [item["repository"] for item in body["recentActivity"]] == [
        "octocat/app",
        "octocat/site",
    ]
    assert body["fetchedAt"] is not None
    assert sorted(r.start.year for _, r in github.calendar_requests) == [this_year - 1, this_year]
    assert {login for login, _ in github.calendar_requests} == {"octocat"}


async def test_combined_leaves_unconfigured_sections_empty(fakes, client):
    tokens, github, spotify, _ = fakes
    tokens.configured.clear()
    github.events = [_event("octocat/app")]

    response = await client.get("/api/activity/combined")

    assert response.status_code == 200
    body = response.json()
    assert body["contributions"] == []
    assert body["totalContributions"] == 0
    assert body["recentActivity"] == []
    assert body["spotifyTracks"] == []
    assert github.calendar_requests == []
    assert spotify.limits == []


async def test_combined_accepts_camel_case_limits(fakes, client):
    tokens, github, spotify, _ = fakes
    tokens.configured.add(Provider.SPOTIFY)
    github.events = [_event("octocat/app"), _event("octocat/site", minutes=5)]

    response = await client.get(
        "/api/activity/combined", params={"activityLimit": 1, "tracksLimit": 3}
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body["recentActivity"]) == 1
    assert [track["id"] for track in body["spotifyTracks"]] == ["t1"]
    assert github.activity_limits == [1]
    assert spotify.limits == [3]


async def test_history_pairs_commits_with_linked_tracks(fakes, client):
    _, _, _, store = fakes
    recent = dataclasses.replace(
        COMMIT, committed_at=datetime.now(timezone.utc) - timedelta(hours=1)
    )
    old = dataclasses.replace(
        COMMIT,
        hash="fedcba9876543210",
        committed_at=datetime.now(timezone.utc) - timedelta(days=30),
    )
    store.insert_commits([recent, old])
    store.insert_listens(
        [
            dataclasses.replace(
                LISTEN,
                played_at=recent.committed_at - timedelta(minutes=2),
                linked_commit_hash=recent.hash,
            )
        ]
    )

    response = await client.get("/api/activity/history")

    assert response.status_code == 200
    assert response.headers["cache-control"] == RECENT.cache_control
    body = response.json()
    assert [entry["commit"]["hash"] for entry in body["entries"]] == [recent.hash]
    tracks = body["entries"][0]["tracks"]
    assert [track["id"] for track in tracks] == ["t1"]
    assert tracks[0]["linkedCommitHash"] == recent.hash
    assert body["from"] < body["to"]


async def test_repository_metadata(fakes, client):
    response = await client.get("/api/github/repo", params={"repo": "app"})

    assert response.status_code == 200
    assert response.headers["cache-control"] == AGGREGATE.cache_control
    body = response.json()
    assert body["status"] == 200
    assert body["repo"]["fullName"] == "octocat/app"
    assert body["repo"]["stars"] == 12
    assert body["repo"]["defaultBranch"] == "main"


async def test_missing_repository_metadata_is_a_value(fakes, client):
    _, github, _, _ = fakes
    github.repo = NotFound("octocat/missing")

    response = await client.get("/api/github/repo", params={"repo": "missing"})

    assert response.status_code == 200
    assert response.json() == {"repo": None, "status": 404}


async def test_contributions_for_a_year(fakes, client):
    _, github, _, _ = fakes
    github.calendars = {
        2023: ContributionCalendar(
            total=9,
            days=[
                ContributionDay(day=date(2023, 3, 1), count=5),
                ContributionDay(day=date(2023, 3, 2), count=4),
            ],
        )
    }

    response = await client.get("/api/github/contributions", params={"year": 2023})

    assert response.status_code == 200
    assert response.json() == {
        "year": 2023,
        "totalContributions": 9,
        "contributions": [
            {"date": "2023-03-01", "count": 5},
            {"date": "2023-03-02", "count": 4},
        ],
    }
    ((login, window),) = github.calendar_requests
    assert login == "octocat"
    assert (window.start, window.end) == (
        datetime(2023, 1, 1, tzinfo=timezone.utc),
        datetime(2023, 12, 31, 23, 59, 59, tzinfo=timezone.utc),
    )


async def test_contributions_reject_future_years(client):
    future = datetime.now(timezone.utc).year + 1

    response = await client.get("/api/github/contributions", params={"year": future})

    assert response.status_code == 400
