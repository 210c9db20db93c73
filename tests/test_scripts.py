from __future__ import annotations

from datetime import datetime, timezone

import pytest

from activity_sync.services.sync_orchestrator import SyncRunReport, SyncRunStatus
from scripts import run_sync, watch_activity

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("status", "code"),
    [
        (SyncRunStatus.SUCCEEDED, run_sync.EXIT_OK),
        (SyncRunStatus.PARTIALLY_FAILED, run_sync.EXIT_FAILED),
        (SyncRunStatus.FAILED, run_sync.EXIT_FAILED),
        (SyncRunStatus.TIMEOUT, run_sync.EXIT_TIMEOUT),
    ],
)
def test_run_sync_exit_codes(status: SyncRunStatus, code: int) -> None:
    report = SyncRunReport(status=status, started_at=NOW, finished_at=NOW)
    assert run_sync.exit_code_for(report) == code


def test_watcher_describes_now_playing_and_commit_payloads() -> None:
    playing = {"isPlaying": True, "track": {"name": "Song", "artist": "Band"}}
    idle = {"isPlaying": False, "message": "No refresh token configured"}
    commits = {
        "activities": [{"shortHash": "0123456", "repository": "octocat/app"}],
        "lastSyncedAt": "2024-05-01T12:00:00.000000Z",
    }

    assert watch_activity._describe(playing) == "now playing Song by Band"
    assert watch_activity._describe(idle) == "No refresh token configured"
    assert watch_activity._describe(commits) == (
        "1 commits, synced 2024-05-01T12:00:00.000000Z | latest 0123456 octocat/app"
    )
