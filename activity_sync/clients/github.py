"""
GitHub REST v3 and GraphQL client.

Calls take their token from the shared token cache and go through the
bounded 401 retry in ``activity_sync.utils.http``. Raw JSON is normalized into
the canonical records in ``activity_sync.models.activity``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

import httpx

from activity_sync.core.errors import NotFound, UpstreamUnavailableError
from activity_sync.models.activity import (
    ActivityEvent,
    CommitRecord,
    ContributionCalendar,
    ContributionDay,
    DateRange,
    Provider,
    RepoMeta,
)
from activity_sync.utils.http import (
    RetryConfig,
    decode_json,
    malformed_payload,
    request_with_auth_retry,
)
from activity_sync.utils.timestamps import parse_timestamp

if TYPE_CHECKING:  # pragma: no cover
    from activity_sync.services.token_cache import TokenCache

logger = logging.getLogger(__name__)

_PROVIDER = Provider.GITHUB.value

_CONTRIBUTIONS_QUERY = """
query($login: String!, $from: DateTime!, $to: DateTime!) {
  user(login: $login) {
    contributionsCollection(from: $from, to: $to) {
      contributionCalendar {
        totalContributions
        weeks {
          contributionDays {
            date
            contributionCount
          }
        }
      }
    }
  }
}
"""

_BRANCH_PREFIX = re.compile(
    r"^(feat|feature|fix|chore|refactor|infra|docs|style|test|ci|build|perf)/",
    re.IGNORECASE,
)

_PR_VERBS = {
    "opened": "opened",
    "closed": "closed",
    "merged": "merged",
    "reopened": "reopened",
    "synchronize": "updated",
    "edited": "edited",
    "review_requested": "requested review on",
    "ready_for_review": "marked ready",
}

_ISSUE_VERBS = {
    "opened": "opened",
    "closed": "closed",
    "reopened": "reopened",
    "edited": "edited",
    "assigned": "assigned",
    "labeled": "labeled",
}


class GitHubClient:
    """Fetch commits, repository metadata and contribution data from GitHub."""

    API_BASE = "https://api.github.com"
    WEB_BASE = "https://github.com"
    EVENTS_PER_PAGE = 100
    MAX_EVENT_PAGES = 3

    def __init__(
        self,
        token_cache: TokenCache,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._tokens = token_cache
        self._timeout = timeout
        self._transport = transport
        self._retry_config = retry_config

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {
            "Accept": "application/vnd.github.v3+json",
            "Authorization": f"token {token.strip()}",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.API_BASE, timeout=self._timeout, transport=self._transport
        )

    async def _get(
        self,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        allow_status: Iterable[int] = (404,),
    ) -> httpx.Response:
        async with self._client() as client:

            async def send(token: str) -> httpx.Response:
                return await client.get(path, params=params, headers=self._headers(token))

            return await request_with_auth_retry(
                send,
                token_cache=self._tokens,
                provider=Provider.GITHUB,
                retry_config=self._retry_config,
                allow_status=allow_status,
            )

    async def get_latest_commit(
        self, owner: str, repo: str
    ) -> Union[CommitRecord, NotFound]:
        """Return the newest commit on the default branch of ``owner/repo``."""
        full_name = f"{owner}/{repo}"
        # 409 is GitHub's answer for an empty repository.
        response = await self._get(
            f"/repos/{owner}/{repo}/commits",
            params={"per_page": 1},
            allow_status=(404, 409),
        )
        if response.status_code in (404, 409):
            return NotFound(resource=full_name)

        commits = decode_json(response, _PROVIDER)
        if not commits:
            return NotFound(resource=full_name)
        with malformed_payload(_PROVIDER):
            return self._normalize_commit(commits[0], full_name)

    async def get_commit(
        self, repo_full_name: str, sha: str
    ) -> Union[CommitRecord, NotFound]:
        response = await self._get(f"/repos/{repo_full_name}/commits/{sha}")
        if response.status_code == 404:
            return NotFound(resource=f"{repo_full_name}@{sha}")
        with malformed_payload(_PROVIDER):
            return self._normalize_commit(decode_json(response, _PROVIDER), repo_full_name)

    async def get_repo_meta(self, owner: str, repo: str) -> Union[RepoMeta, NotFound]:
        response = await self._get(f"/repos/{owner}/{repo}")
        if response.status_code == 404:
            return NotFound(resource=f"{owner}/{repo}")

        data = decode_json(response, _PROVIDER)
        with malformed_payload(_PROVIDER):
            return RepoMeta(
                full_name=data.get("full_name", f"{owner}/{repo}"),
                description=data.get("description"),
                url=data.get("html_url", f"{self.WEB_BASE}/{owner}/{repo}"),
                stars=int(data.get("stargazers_count") or 0),
                forks=int(data.get("forks_count") or 0),
                language=data.get("language"),
                default_branch=data.get("default_branch") or "main",
                pushed_at=parse_timestamp(data.get("pushed_at")),
                is_private=bool(data.get("private")),
            )

    async def get_contribution_calendar(
        self, login: str, date_range: DateRange
    ) -> Union[ContributionCalendar, NotFound]:
        """Query the contribution calendar for ``login`` over ``date_range``."""
        body = {
            "query": _CONTRIBUTIONS_QUERY,
            "variables": {
                "login": login,
                "from": date_range.start.isoformat(),
                "to": date_range.end.isoformat(),
            },
        }
        async with self._client() as client:

            async def send(token: str) -> httpx.Response:
                return await client.post("/graphql", json=body, headers=self._headers(token))

            response = await request_with_auth_retry(
                send,
                token_cache=self._tokens,
                provider=Provider.GITHUB,
                retry_config=self._retry_config,
            )

        payload = decode_json(response, _PROVIDER)
        with malformed_payload(_PROVIDER):
            if payload.get("errors"):
                message = payload["errors"][0].get("message", "GraphQL query failed")
                if payload["errors"][0].get("type") == "NOT_FOUND":
                    return NotFound(resource=login)
                raise UpstreamUnavailableError(message, provider=_PROVIDER)

            user = (payload.get("data") or {}).get("user")
            if user is None:
                return NotFound(resource=login)

            calendar = user["contributionsCollection"]["contributionCalendar"]
            days = [
                ContributionDay(
                    day=datetime.fromisoformat(day["date"]).date(),
                    count=int(day["contributionCount"]),
                )
                for week in calendar.get("weeks", [])
                for day in week.get("contributionDays", [])
            ]
            return ContributionCalendar(
                total=int(calendar.get("totalContributions") or 0), days=days
            )

    async def _list_events(self, login: str, *, since: Optional[datetime] = None) -> List[dict]:
        events: List[dict] = []
        for page in range(1, self.MAX_EVENT_PAGES + 1):
            try:
                response = await self._get(
                    f"/users/{login}/events",
                    params={"per_page": self.EVENTS_PER_PAGE, "page": page},
                )
            except UpstreamUnavailableError:
                # Later pages past the retained window come back as errors.
                if page == 1:
                    raise
                logger.warning("Stopped reading GitHub events at page %d", page)
                break

            if response.status_code == 404:
                if page == 1:
                    logger.warning("GitHub user %s not found", login)
                break

            batch = decode_json(response, _PROVIDER)
            if not isinstance(batch, list) or not batch:
                break
            events.extend(event for event in batch if isinstance(event, dict))

            last = batch[-1]
            oldest = parse_timestamp(last.get("created_at")) if isinstance(last, dict) else None
            if since is not None and oldest is not None and oldest < since:
                break
            if len(batch) < self.EVENTS_PER_PAGE:
                break
        return events

    async def list_recent_commits(self, login: str, since: datetime) -> List[CommitRecord]:
        """Collect commits from ``login``'s push events newer than ``since``."""
        events = await self._list_events(login, since=since)
        commits: List[CommitRecord] = []
        seen: set[tuple[str, str]] = set()

        with malformed_payload(_PROVIDER):
            for event in events:
                if event.get("type") != "PushEvent":
                    continue
                pushed_at = parse_timestamp(event.get("created_at"))
                if pushed_at is None or pushed_at < since:
                    continue

                repo_full_name = (event.get("repo") or {}).get("name", "")
                payload = event.get("payload") or {}
                raw_commits = payload.get("commits") or []

                if raw_commits:
                    for raw in raw_commits:
                        sha = raw.get("sha")
                        if not sha or (repo_full_name, sha) in seen:
                            continue
                        seen.add((repo_full_name, sha))
                        commits.append(
                            CommitRecord(
                                hash=sha,
                                message=raw.get("message", ""),
                                author_name=(raw.get("author") or {}).get("name", ""),
                                repo_full_name=repo_full_name,
                                url=f"{self.WEB_BASE}/{repo_full_name}/commit/{sha}",
                                committed_at=pushed_at,
                            )
                        )
                    continue

                # Newer event payloads omit the commit list; resolve the head commit.
                head = payload.get("head")
                if not head or (repo_full_name, head) in seen:
                    continue
                seen.add((repo_full_name, head))
                detail = await self.get_commit(repo_full_name, head)
                if isinstance(detail, CommitRecord):
                    commits.append(detail)

        return commits

    async def list_recent_activity(self, login: str, limit: int = 5) -> List[ActivityEvent]:
        """Return the latest event per distinct repository, newest first."""
        response = await self._get(
            f"/users/{login}/events", params={"per_page": self.EVENTS_PER_PAGE}
        )
        if response.status_code == 404:
            return []

        activity: List[ActivityEvent] = []
        seen_repos: set[str] = set()
        with malformed_payload(_PROVIDER):
            for raw in decode_json(response, _PROVIDER):
                repo_name = (raw.get("repo") or {}).get("name")
                if not repo_name or repo_name in seen_repos:
                    continue
                event = parse_event(raw)
                if event is None:
                    continue
                seen_repos.add(repo_name)
                activity.append(event)
                if len(activity) >= limit:
                    break
        return activity

    def _normalize_commit(self, data: Dict[str, Any], repo_full_name: str) -> CommitRecord:
        commit = data.get("commit") or {}
        author = commit.get("author") or {}
        sha = data["sha"]
        return CommitRecord(
            hash=sha,
            message=commit.get("message", ""),
            author_name=author.get("name", ""),
            repo_full_name=repo_full_name,
            url=data.get("html_url") or f"{self.WEB_BASE}/{repo_full_name}/commit/{sha}",
            committed_at=parse_timestamp(author.get("date")) or datetime.fromtimestamp(0, tz=timezone.utc),
        )


def _first_line(text: Optional[str]) -> str:
    if not text:
        return ""
    return text.split("\n", 1)[0].strip()


def _truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def parse_event(event: Dict[str, Any]) -> Optional[ActivityEvent]:
    """Normalize a raw public event; returns None for empty pushes."""
    repo_full = (event.get("repo") or {}).get("name", "")
    repo_name = repo_full.rsplit("/", 1)[-1]
    payload = event.get("payload") or {}
    timestamp = parse_timestamp(event.get("created_at"))
    if timestamp is None:
        return None

    url = f"{GitHubClient.WEB_BASE}/{repo_full}"
    kind = event.get("type", "")

    def build(type_: str, title: str, description: str, link: Optional[str] = None) -> ActivityEvent:
        return ActivityEvent(
            id=str(event.get("id", "")),
            type=type_,
            title=title,
            description=description,
            repository=repo_full,
            url=link or url,
            timestamp=timestamp,
            is_private=event.get("public") is False,
        )

    if kind == "PushEvent":
        commits = payload.get("commits") or []
        count = payload.get("size") if isinstance(payload.get("size"), int) else len(commits)
        if not count and payload.get("head"):
            count = 1
        if not count:
            return None
        ref = (payload.get("ref") or "").replace("refs/heads/", "")
        title = f"pushed {count} commit{'' if count == 1 else 's'}"
        if ref:
            title += f" to {ref}"
        message = _first_line(commits[0].get("message")) if commits else ""
        return build(
            "commit",
            title,
            message or "No commit message",
            f"{url}/commits/{payload.get('head', '')}",
        )

    if kind == "CreateEvent":
        ref_type = payload.get("ref_type") or "repository"
        ref = payload.get("ref")
        if ref_type == "repository":
            return build("create", f"created repository {repo_name}", repo_name)
        if ref_type == "branch":
            return build("create", f"created branch {ref}", f"Branch: {ref}", f"{url}/tree/{ref}")
        if ref_type == "tag":
            return build(
                "create", f"created tag {ref}", f"Tag: {ref}", f"{url}/releases/tag/{ref}"
            )
        return build("create", f"created a {ref_type}", ref or repo_name)

    if kind == "DeleteEvent":
        ref_type = payload.get("ref_type") or "ref"
        ref = payload.get("ref")
        return build("delete", f"deleted {ref_type} {ref}", f"{ref_type}: {ref}")

    if kind == "ReleaseEvent":
        release = payload.get("release") or {}
        name = release.get("name") or release.get("tag_name") or ""
        return build("release", f"released {name}".strip(), name, release.get("html_url"))

    if kind == "PullRequestEvent":
        pull = payload.get("pull_request") or {}
        action = payload.get("action")
        verb = "merged" if action == "closed" and pull.get("merged") else _PR_VERBS.get(action, "worked on")
        number = payload.get("number")
        title = (pull.get("title") or "").strip()
        body = _first_line(pull.get("body"))
        branch = (pull.get("head") or {}).get("ref", "")
        link = pull.get("html_url")
        if title:
            return build("pr", f'{verb} "{title}"', body or title, link)
        label = _BRANCH_PREFIX.sub("", branch).replace("-", " ").replace("_", " ").strip()
        if label:
            return build("pr", f'{verb} "{label}"', f"PR #{number} from {branch}", link)
        return build("pr", f"{verb} PR #{number}", body or f"Pull request #{number}", link)

    if kind == "IssuesEvent":
        issue = payload.get("issue") or {}
        verb = _ISSUE_VERBS.get(payload.get("action"), "worked on")
        number = issue.get("number")
        title = (issue.get("title") or "").strip()
        body = _first_line(issue.get("body"))
        link = issue.get("html_url")
        if title:
            return build("issue", f'{verb} "{title}"', body or title, link)
        return build("issue", f"{verb} issue #{number}", body or f"Issue #{number}", link)

    if kind == "IssueCommentEvent":
        issue = payload.get("issue") or {}
        comment = payload.get("comment") or {}
        target = "PR" if issue.get("pull_request") else "issue"
        return build(
            "issue",
            f"commented on {target} #{issue.get('number')}",
            _truncate(_first_line(comment.get("body"))),
            comment.get("html_url"),
        )

    if kind == "WatchEvent":
        return build("star", "starred", repo_name)

    if kind == "ForkEvent":
        return build("fork", "forked", repo_name)

    label = kind.replace("Event", "").lower() or "activity"
    return build("unknown", label, repo_name)


__all__ = ["GitHubClient", "parse_event"]
